"""Conversation session: one owned state object per remote thread.

A ConversationSession owns the identity tracker, normalizer, timeline,
artifact set and per-turn metrics of one conversation. All mutation goes
through two methods:

- ``apply_record(record, turn)`` for live stream records
- ``apply_poll_result(snapshot, turn)`` for snapshots fetched by the poller

Each mutation is published on the EventBus for the rendering layer.

Turn flow (``run_turn``):

    turn_started
      -> stream records through the normalizer, tracker and timeline
      -> stream ends (closed, failed or aborted)
      -> completion heuristics
      -> pending work?  start the status poller as its own task
      -> turn_finished{outcome}   (exactly once, after any poll)

Aborting a stream stops the transport reader only; a poller started by an
earlier turn keeps running until its own termination conditions.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from config import Settings
from config import settings as default_settings
from errors import TransportError, TurnInProgressError
from events import EventBus, EventType, TimelineEvent
from metrics import MetricsCollector, TurnMetricsData, turn_key
from stream.artifacts import ArtifactExtractor, ArtifactSet
from stream.completion import CompletionHeuristics, CompletionReport
from stream.identity import IdentityTracker
from stream.normalizer import EventNormalizer, MessageRole, classify_role
from stream.patterns import DEFAULT_PATTERNS, HeuristicPatterns
from stream.poller import PollOutcome, PollResult, SleepFunc, StatusPoller
from stream.timeline import TimelineAggregator, TimelineChange
from stream.transport import TransportReader
from stream.types import (
    Artifact,
    Delegation,
    EntryKind,
    ErrorSignal,
    Finding,
    RawRecord,
    RunStatus,
    SemanticUnit,
    Snapshot,
    TurnOutcome,
    payload_text,
)

if TYPE_CHECKING:
    from remote.client import AgentServiceClient

logger = structlog.get_logger(__name__)

_POLL_OUTCOMES: dict[PollOutcome, TurnOutcome] = {
    PollOutcome.SUCCESS: TurnOutcome.COMPLETED,
    PollOutcome.TIMEOUT: TurnOutcome.COMPLETED_WITH_TIMEOUT,
    PollOutcome.ERROR: TurnOutcome.ERROR,
    PollOutcome.GAVE_UP: TurnOutcome.ERROR,
}

_POLL_NOTICES: dict[PollOutcome, tuple[str, str]] = {
    PollOutcome.TIMEOUT: (
        "warning",
        "The remote task is still running. Results collected so far are shown.",
    ),
    PollOutcome.ERROR: ("error", "The remote task reported an error."),
    PollOutcome.GAVE_UP: (
        "error",
        "The status endpoint could not be reached. Results collected so far are shown.",
    ),
}


def _turn_notice(outcome: PollOutcome | None, interruption: str | None) -> tuple[str, str] | None:
    """Build the one notice a turn gets from its stream failure and poll outcome."""
    poll_notice = _POLL_NOTICES.get(outcome) if outcome is not None else None
    if interruption is None:
        return poll_notice
    if poll_notice is None:
        return ("error", interruption)
    return ("error", f"{interruption}. {poll_notice[1]}")


@dataclass
class TurnSummary:
    """What ``run_turn`` knows when the live stream has ended.

    Attributes:
        turn: Turn number.
        report: Completion heuristics evaluated at stream end (None if aborted).
        polling: Whether a status poller was started for the turn.
        outcome: Final outcome, or None while the poller is still running.
    """

    turn: int
    report: CompletionReport | None
    polling: bool
    outcome: TurnOutcome | None


class ConversationSession:
    """Reconciles the remote thread's streams and snapshots into one timeline.

    Not safe for concurrent use from multiple threads. Within one event loop
    a poll task may interleave with a new turn's stream; the session-scoped
    identity tracker makes that interleaving idempotent, and a poll for an
    earlier turn only merges the messages that turn owns.

    Attributes:
        session_id: Local session identifier used on the event channel.
        thread_id: Remote thread identity, set on the first turn.
        outcomes: Final outcome per finished turn.
    """

    def __init__(
        self,
        session_id: str,
        client: "AgentServiceClient",
        event_bus: EventBus,
        settings: Settings | None = None,
        *,
        thread_id: str | None = None,
        patterns: HeuristicPatterns = DEFAULT_PATTERNS,
        heuristics: CompletionHeuristics | None = None,
        metrics: MetricsCollector | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self.thread_id = thread_id
        self.client = client
        self.event_bus = event_bus
        self.settings = settings or default_settings
        self.tracker = IdentityTracker()
        self.normalizer = EventNormalizer()
        self.timeline = TimelineAggregator(patterns)
        self.artifacts = ArtifactSet()
        self.extractor = ArtifactExtractor(patterns)
        self.heuristics = heuristics or CompletionHeuristics(patterns)
        self.metrics = metrics or MetricsCollector()
        self.outcomes: dict[int, TurnOutcome] = {}
        self.created_at = time.time()
        self._sleep = sleep
        self._reader: TransportReader | None = None
        self._streaming = False
        self._abort_requested = False
        self._payload_errors: dict[int, int] = {}
        self._turn_messages: dict[int, str] = {}
        self._delegation_turns: dict[str, int] = {}
        self._poll_tasks: dict[int, asyncio.Task[None]] = {}
        self._log = logger.bind(session_id=session_id)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def turn(self) -> int:
        return self.timeline.turn

    @property
    def streaming(self) -> bool:
        return self._streaming

    @property
    def polling(self) -> bool:
        return any(not task.done() for task in self._poll_tasks.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "thread_id": self.thread_id,
            "turn": self.turn,
            "streaming": self.streaming,
            "polling": self.polling,
            "outcomes": {str(turn): outcome.value for turn, outcome in self.outcomes.items()},
            "timeline": [entry.to_dict() for entry in self.timeline.entries],
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "created_at": self.created_at,
        }

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    async def apply_record(self, record: RawRecord, turn: int | None = None) -> list[TimelineChange]:
        """Normalize one stream record and merge it into the timeline."""
        turn = self.turn if turn is None else turn
        key = turn_key(self.session_id, turn)
        parse_errors = self.normalizer.parse_errors

        units = self.normalizer.normalize(record)

        self.metrics.increment(key, "records_read")
        if self.normalizer.parse_errors > parse_errors:
            self.metrics.increment(key, "parse_errors")
        return await self._apply_units(units, turn)

    async def apply_poll_result(self, snapshot: Snapshot, turn: int | None = None) -> list[TimelineChange]:
        """Merge a fetched snapshot: late units first, then the file table.

        The snapshot covers the whole thread. For a poll of an earlier turn
        only the messages before the next turn's user message belong to it;
        when that boundary is not in the snapshot, only Findings for the
        turn's own Delegations are merged and everything else is left for the
        turn that owns it.
        """
        turn = self.turn if turn is None else turn
        messages, scoped = self._messages_owned_by(snapshot.messages, turn)
        units = self.normalizer.normalize_messages(messages, snapshot=True)
        if not scoped:
            owned = [unit for unit in units if self._owns_finding(unit, turn)]
            if len(owned) < len(units):
                self._log.debug(
                    "late_snapshot_units_deferred",
                    turn=turn,
                    current_turn=self.turn,
                    deferred=len(units) - len(owned),
                )
            units = owned
        changes = await self._apply_units(units, turn)

        for artifact in self.extractor.from_snapshot(snapshot):
            await self._add_artifact(artifact, turn)

        self._log.debug(
            "poll_result_applied",
            turn=turn,
            message_count=snapshot.message_count,
            changes=len(changes),
        )
        return changes

    def _messages_owned_by(self, messages: list[Any], turn: int) -> tuple[list[Any], bool]:
        if turn >= self.turn:
            return messages, True

        next_message = self._turn_messages.get(turn + 1)
        if next_message is None:
            return messages, False

        for index in range(len(messages) - 1, -1, -1):
            message = messages[index]
            if not isinstance(message, dict) or classify_role(message) != MessageRole.USER:
                continue
            if payload_text(message.get("content")).strip() == next_message.strip():
                return messages[:index], True
        return messages, False

    def _owns_finding(self, unit: SemanticUnit, turn: int) -> bool:
        if not isinstance(unit, Finding):
            return False
        owner = self._delegation_turns.get(unit.correlates_to)
        return owner is not None and owner <= turn

    async def _apply_units(self, units: list[SemanticUnit], turn: int) -> list[TimelineChange]:
        key = turn_key(self.session_id, turn)
        applied: list[TimelineChange] = []

        for unit in units:
            self.metrics.increment(key, "units_normalized")
            admitted = self.tracker.admit(unit)
            if admitted is None:
                self.metrics.increment(key, "duplicates_dropped")
                continue

            if isinstance(admitted, ErrorSignal):
                self._payload_errors[turn] = self._payload_errors.get(turn, 0) + 1
                await self._notice("error", admitted.message, turn)
                continue

            changes = self.timeline.apply(admitted, turn)
            for change in changes:
                await self._publish_change(change)
                if change.added and change.entry.kind == EntryKind.DELEGATION:
                    self._delegation_turns[change.entry.source_ids[0]] = change.entry.turn
                    self.metrics.increment(key, "delegations")
                elif change.added and change.entry.kind == EntryKind.FINDING:
                    self.metrics.increment(key, "findings")
            applied.extend(changes)

            for artifact in self._artifacts_for(admitted, changes):
                await self._add_artifact(artifact, turn)

        return applied

    def _artifacts_for(self, unit: SemanticUnit, changes: list[TimelineChange]) -> list[Artifact]:
        found: list[Artifact] = []
        if isinstance(unit, Delegation):
            found.extend(self.extractor.from_delegation(unit))
        elif isinstance(unit, Finding):
            found.extend(self.extractor.from_finding(unit))
        for change in changes:
            if change.entry.kind != EntryKind.DELEGATION:
                found.extend(self.extractor.from_text(change.entry.text))
        return found

    async def _add_artifact(self, artifact: Artifact, turn: int) -> None:
        if not self.artifacts.add(artifact):
            return
        self.metrics.increment(turn_key(self.session_id, turn), "artifacts")
        self._log.info(
            "artifact_added",
            file_name=artifact.file_name,
            source=artifact.source.value,
            size=len(artifact.content),
        )
        await self._publish(EventType.ARTIFACT_ADDED, turn, {"artifact": artifact.to_dict()})

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def run_turn(self, message: str) -> TurnSummary:
        """Stream one turn and decide whether it is finished.

        Returns once the live stream has ended. When the heuristics ask for
        confirmation, the poller keeps running in its own task and the turn
        finishes from there.

        Raises:
            TurnInProgressError: If a stream is already live on this session.
        """
        if self._streaming:
            raise TurnInProgressError(f"Session {self.session_id} is already streaming")

        self._streaming = True
        self._abort_requested = False
        turn = self.timeline.begin_turn()
        self._turn_messages[turn] = message
        key = turn_key(self.session_id, turn)
        self.metrics.start(key)
        log = self._log.bind(turn=turn)

        await self._publish(EventType.TURN_STARTED, turn, {"message": message})
        log.info("turn_started", thread_id=self.thread_id)

        abrupt = False
        failure: str | None = None
        aborted = False
        records_read = 0

        try:
            if self.thread_id is None:
                self.thread_id = await self.client.create_thread()

            async with self.client.stream_run(self.thread_id, message) as run:
                self.thread_id = run.thread_id
                reader = TransportReader(run.chunks)
                self._reader = reader
                if self._abort_requested:
                    reader.abort()

                # The reader ends on its own after a transport ErrorSignal
                async for item in reader.records():
                    if isinstance(item, ErrorSignal):
                        abrupt = True
                        failure = item.message
                        continue
                    await self.apply_record(item, turn)

                records_read = reader.records_read
                aborted = reader.aborted
        except TransportError as e:
            abrupt = True
            failure = str(e)
        finally:
            self._reader = None
            self._streaming = False
            self.timeline.close()

        aborted = aborted or self._abort_requested

        if aborted:
            log.info("turn_aborted", records_read=records_read)
            await self._finish_turn(turn, TurnOutcome.CANCELLED, None, None)
            return TurnSummary(turn, None, False, TurnOutcome.CANCELLED)

        interruption: str | None = None
        if abrupt:
            log.warning("turn_stream_interrupted", error=failure)
            interruption = f"The live stream was interrupted: {failure}"

        report = self.heuristics.evaluate(
            self.timeline.entries_for_turn(turn),
            abrupt_end=abrupt,
            records_read=records_read,
        )
        log.info("turn_stream_ended", records_read=records_read, reasons=report.reasons)

        if report.pending and self.thread_id:
            # The interruption notice is folded into the poll outcome notice
            self._start_poll(turn, report, interruption)
            return TurnSummary(turn, report, True, None)

        if interruption is not None:
            await self._notice("error", interruption, turn)

        if abrupt or self._payload_errors.get(turn):
            outcome = TurnOutcome.ERROR
        else:
            outcome = TurnOutcome.COMPLETED
        await self._finish_turn(turn, outcome, report, None)
        return TurnSummary(turn, report, False, outcome)

    def abort_stream(self) -> bool:
        """Stop the live stream of the current turn.

        Returns:
            False when no stream was live.
        """
        if not self._streaming:
            return False
        self._abort_requested = True
        if self._reader is not None:
            self._reader.abort()
        self._log.info("stream_abort_requested", turn=self.turn)
        return True

    async def wait_idle(self) -> None:
        """Wait for every running poll task to finish."""
        tasks = [task for task in self._poll_tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """Cancel running pollers and close the session's event channel."""
        self.abort_stream()
        tasks = [task for task in self._poll_tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.event_bus.close_session(self.session_id)
        self._log.info("session_closed", turns=self.turn)

    def _start_poll(self, turn: int, report: CompletionReport, interruption: str | None) -> None:
        task = asyncio.create_task(
            self._poll_and_finish(turn, report, interruption),
            name=f"poll-{self.session_id}-{turn}",
        )
        self._poll_tasks[turn] = task

        def _remove_task(t: asyncio.Task[None], poll_turn: int = turn) -> None:
            if self._poll_tasks.get(poll_turn) is t:
                self._poll_tasks.pop(poll_turn, None)
            exc = None if t.cancelled() else t.exception()
            if exc is not None:
                self._log.error(
                    "poll_task_failed",
                    turn=poll_turn,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        task.add_done_callback(_remove_task)

    async def _poll_and_finish(
        self,
        turn: int,
        report: CompletionReport,
        interruption: str | None = None,
    ) -> None:
        key = turn_key(self.session_id, turn)

        async def on_snapshot(snapshot: Snapshot) -> None:
            await self.apply_poll_result(snapshot, turn)

        async def on_progress(attempt: int, status: RunStatus) -> None:
            self.metrics.increment(key, "poll_attempts")
            await self._publish(
                EventType.POLL_PROGRESS,
                turn,
                {"attempt": attempt, "status": status.value},
            )

        poller = StatusPoller.from_settings(
            self.settings,
            self.client,
            self.thread_id or "",
            on_snapshot,
            sleep=self._sleep,
            on_progress=on_progress,
        )

        try:
            result = await poller.run()
        except asyncio.CancelledError:
            notice = _turn_notice(None, interruption)
            if notice is not None:
                await self._notice(notice[0], notice[1], turn)
            await self._finish_turn(turn, TurnOutcome.CANCELLED, report, None)
            raise
        except Exception as e:
            self._log.error(
                "poll_failed",
                turn=turn,
                error=str(e),
                error_type=type(e).__name__,
            )
            notice = _turn_notice(PollOutcome.GAVE_UP, interruption)
            if notice is not None:
                await self._notice(notice[0], notice[1], turn)
            await self._finish_turn(turn, TurnOutcome.ERROR, report, None)
            return

        notice = _turn_notice(result.outcome, interruption)
        if notice is not None:
            await self._notice(notice[0], notice[1], turn)

        await self._finish_turn(turn, _POLL_OUTCOMES[result.outcome], report, result)

    async def _finish_turn(
        self,
        turn: int,
        outcome: TurnOutcome,
        report: CompletionReport | None,
        poll: PollResult | None,
    ) -> None:
        self.outcomes[turn] = outcome
        data = self.metrics.finish(turn_key(self.session_id, turn)) or TurnMetricsData()

        self._log.info(
            "turn_finished",
            turn=turn,
            outcome=outcome.value,
            poll_outcome=poll.outcome.value if poll else None,
        )
        await self._publish(
            EventType.TURN_FINISHED,
            turn,
            {
                "outcome": outcome.value,
                "reasons": report.reasons if report else [],
                "poll": poll.to_dict() if poll else None,
                "metrics": data.to_dict(),
            },
        )

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    async def _publish_change(self, change: TimelineChange) -> None:
        event_type = (
            EventType.TIMELINE_ENTRY_ADDED if change.added else EventType.TIMELINE_ENTRY_UPDATED
        )
        await self._publish(event_type, change.entry.turn, {"entry": change.entry.to_dict()})

    async def _notice(self, level: str, message: str, turn: int) -> None:
        await self._publish(EventType.NOTICE, turn, {"level": level, "message": message})

    async def _publish(self, event_type: EventType, turn: int, data: dict[str, Any]) -> None:
        await self.event_bus.publish(
            TimelineEvent(
                type=event_type,
                session_id=self.session_id,
                turn=turn,
                data=data,
            )
        )
