"""Timeline aggregator: SemanticUnits to an ordered, typed timeline.

A small state machine over the "current open entry":

    Idle --TextFragment--> Prose(open)      (kind decided once, at creation)
    Prose --TextFragment--> Prose           (text appended)
    *    --Delegation-----> Idle            (open entry closed, new entry pushed)
    *    --Finding--------> Idle            (open entry closed, new entry pushed)

Closing an entry makes it immutable for the rest of the session. Continuation
suffixes produced by the identity tracker are appended only while the entry
that holds their identity is still the open one.
"""

from dataclasses import dataclass

import structlog

from stream.patterns import DEFAULT_PATTERNS, HeuristicPatterns
from stream.types import (
    CoordinationQuestion,
    Delegation,
    EntryKind,
    ErrorSignal,
    Finding,
    SemanticUnit,
    TextFragment,
    TimelineEntry,
    payload_text,
)

logger = structlog.get_logger(__name__)

# Joins prose from distinct source messages merged into one entry
PROSE_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class TimelineChange:
    """One entry addition or in-place update, for the event channel."""

    entry: TimelineEntry
    added: bool


class TimelineAggregator:
    """Owns the ordered timeline of one session.

    Not safe for concurrent use; a session serializes all calls on its event
    loop.
    """

    def __init__(self, patterns: HeuristicPatterns = DEFAULT_PATTERNS) -> None:
        self._patterns = patterns
        self._entries: list[TimelineEntry] = []
        self._entry_ids: set[str] = set()
        self._by_source: dict[str, TimelineEntry] = {}
        self._open: TimelineEntry | None = None
        self._turn = 0

    @property
    def entries(self) -> list[TimelineEntry]:
        return list(self._entries)

    @property
    def turn(self) -> int:
        return self._turn

    @property
    def open_entry(self) -> TimelineEntry | None:
        return self._open

    def begin_turn(self) -> int:
        """Close the open entry and start a new turn. Returns the new turn number."""
        self._close_open()
        self._turn += 1
        return self._turn

    def entries_for_turn(self, turn: int) -> list[TimelineEntry]:
        return [entry for entry in self._entries if entry.turn == turn]

    def close(self) -> None:
        """Close the open entry, if any (stream end)."""
        self._close_open()

    def apply(self, unit: SemanticUnit, turn: int | None = None) -> list[TimelineChange]:
        """Merge one admitted unit into the timeline.

        Args:
            unit: A unit that already passed the identity tracker.
            turn: The turn the unit belongs to. Units for an earlier turn (late
                poll results) never touch the current open entry.
        """
        turn = self._turn if turn is None else turn
        late = turn < self._turn

        if isinstance(unit, ErrorSignal):
            return []
        if isinstance(unit, Delegation):
            return [self._push_delegation(unit, turn, late)]
        if isinstance(unit, Finding):
            return [self._push_finding(unit, turn, late)]
        if isinstance(unit, CoordinationQuestion):
            return self._apply_prose(unit.source_id, unit.text, False, turn, late, forced=True)
        if isinstance(unit, TextFragment):
            return self._apply_prose(unit.source_id, unit.text, unit.continuation, turn, late)
        return []

    # ------------------------------------------------------------------
    # Prose
    # ------------------------------------------------------------------

    def _apply_prose(
        self,
        source_id: str,
        text: str,
        continuation: bool,
        turn: int,
        late: bool,
        forced: bool = False,
    ) -> list[TimelineChange]:
        if continuation:
            entry = self._by_source.get(source_id)
            if entry is None or entry.closed or entry is not self._open or entry.trailing_id != source_id:
                logger.debug("continuation_after_close_dropped", source_id=source_id)
                return []
            entry.text += text
            return [TimelineChange(entry=entry, added=False)]

        if not late and self._open is not None and self._open.is_prose:
            entry = self._open
            entry.text += PROSE_SEPARATOR + text if entry.text else text
            entry.source_ids.append(source_id)
            self._by_source[source_id] = entry
            return [TimelineChange(entry=entry, added=False)]

        kind = EntryKind.COORDINATION_QUESTION if forced else self._classify(text)
        entry = TimelineEntry(
            entry_id=self._new_entry_id(kind, source_id),
            kind=kind,
            turn=turn,
            text=text,
            source_ids=[source_id],
        )
        self._by_source[source_id] = entry
        self._push(entry, late, keep_open=True)
        return [TimelineChange(entry=entry, added=True)]

    def _classify(self, text: str) -> EntryKind:
        if self._patterns.coordination.matches(text):
            logger.debug(
                "prose_classified_as_coordination",
                pattern=self._patterns.coordination.first_match(text),
            )
            return EntryKind.COORDINATION_QUESTION
        return EntryKind.MESSAGE

    # ------------------------------------------------------------------
    # Structured entries
    # ------------------------------------------------------------------

    def _push_delegation(self, unit: Delegation, turn: int, late: bool) -> TimelineChange:
        entry = TimelineEntry(
            entry_id=self._new_entry_id(EntryKind.DELEGATION, unit.id),
            kind=EntryKind.DELEGATION,
            turn=turn,
            text=unit.instructions,
            source_ids=[unit.id],
            worker_name=unit.worker_name,
            payload=unit.tool_input,
        )
        self._push(entry, late, keep_open=False)
        return TimelineChange(entry=entry, added=True)

    def _push_finding(self, unit: Finding, turn: int, late: bool) -> TimelineChange:
        entry = TimelineEntry(
            entry_id=self._new_entry_id(EntryKind.FINDING, unit.correlates_to),
            kind=EntryKind.FINDING,
            turn=turn,
            text=payload_text(unit.payload),
            source_ids=[unit.id],
            worker_name=unit.worker_name,
            correlates_to=unit.correlates_to,
            payload=unit.payload,
        )
        self._push(entry, late, keep_open=False)
        return TimelineChange(entry=entry, added=True)

    def _push(self, entry: TimelineEntry, late: bool, keep_open: bool) -> None:
        if late:
            entry.closed = True
            self._entries.append(entry)
            return
        self._close_open()
        self._entries.append(entry)
        if keep_open:
            self._open = entry
        else:
            entry.closed = True

    def _close_open(self) -> None:
        if self._open is not None:
            self._open.closed = True
            self._open = None

    def _new_entry_id(self, kind: EntryKind, identity: str) -> str:
        entry_id = f"{kind.value}_{identity}"
        suffix = 1
        while entry_id in self._entry_ids:
            suffix += 1
            entry_id = f"{kind.value}_{identity}_{suffix}"
        self._entry_ids.add(entry_id)
        return entry_id
