"""End-to-end tests for stream/session.py with a scripted remote service.

Each test drives ConversationSession.run_turn against FakeAgentClient and
checks the resulting timeline, artifacts, outcome and published events.
Poll waits go through SleepRecorder so nothing actually sleeps.
"""

import asyncio
import json

import pytest

from config import Settings
from errors import StatusEndpointError, TurnInProgressError
from events import EventBus, EventType, TimelineEvent
from stream.session import ConversationSession
from stream.types import EntryKind, RawRecord, RunStatus, Snapshot, TurnOutcome
from tests.conftest import (
    FakeAgentClient,
    FakeStream,
    SleepRecorder,
    ai_message,
    collect_events,
    human_message,
    sse,
    stream_failure,
    text_block,
    tool_message,
    tool_use_block,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

DELEGATING_MESSAGE = ai_message(
    "m1",
    [
        text_block("Delegating the research."),
        tool_use_block("t1", subagent_type="market-researcher", description="Research Q3 demand"),
    ],
)

FINDING_MESSAGE = tool_message("tm1", "Demand grew 12% in Q3.", tool_call_id="t1")


def _make_session(
    client: FakeAgentClient,
    event_bus: EventBus,
    settings: Settings,
    sleep: SleepRecorder,
) -> ConversationSession:
    return ConversationSession("sess_test", client, event_bus, settings, sleep=sleep)


def _of_type(events: list[TimelineEvent], event_type: EventType) -> list[TimelineEvent]:
    return [event for event in events if event.type == event_type]


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def spin() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(spin(), timeout=timeout)


# =========================================================================
# Clean completion
# =========================================================================


class TestCleanTurn:
    """A plain answer finishes without polling."""

    async def test_growing_message_single_entry(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[
                FakeStream(
                    chunks=[
                        sse({"messages": [human_message("Summarize Q3"), ai_message("m1", "Hello")]}),
                        sse({"messages": [human_message("Summarize Q3"), ai_message("m1", "Hello world")]}),
                    ]
                )
            ]
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        summary = await session.run_turn("Summarize Q3")

        assert summary.outcome == TurnOutcome.COMPLETED
        assert not summary.polling
        assert [(e.kind, e.text) for e in session.timeline.entries] == [(EntryKind.MESSAGE, "Hello world")]
        assert client.status_calls == 0
        assert session.thread_id == "thread_1"

        events = await collect_events(event_bus, "sess_test")
        assert events[0].type == EventType.TURN_STARTED
        assert len(_of_type(events, EventType.TIMELINE_ENTRY_ADDED)) == 1
        assert len(_of_type(events, EventType.TIMELINE_ENTRY_UPDATED)) == 1
        finished = _of_type(events, EventType.TURN_FINISHED)
        assert len(finished) == 1
        assert finished[0].data["outcome"] == "completed"
        assert finished[0].data["metrics"]["records_read"] == 2

    async def test_payload_error_without_pending_work(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"error": "GraphRecursionError", "message": "Recursion limit reached"})])]
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        summary = await session.run_turn("Go")

        assert summary.outcome == TurnOutcome.ERROR
        events = await collect_events(event_bus, "sess_test")
        notices = _of_type(events, EventType.NOTICE)
        assert notices[0].data == {"level": "error", "message": "Recursion limit reached"}


# =========================================================================
# Pending work and polling
# =========================================================================


class TestPolling:
    """Pending work is confirmed with the status endpoint."""

    async def test_unresolved_delegation_resolved_by_poll(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        snapshot = Snapshot(messages=[human_message("Research Q3"), DELEGATING_MESSAGE, FINDING_MESSAGE])
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [DELEGATING_MESSAGE]})])],
            statuses=[RunStatus.SUCCESS],
            snapshots=[snapshot],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        summary = await session.run_turn("Research Q3")
        assert summary.polling
        assert summary.outcome is None
        assert summary.report is not None
        assert "balance" in summary.report.reasons

        await session.wait_idle()

        findings = [e for e in session.timeline.entries if e.kind == EntryKind.FINDING]
        assert len(findings) == 1
        assert findings[0].correlates_to == "t1"
        assert findings[0].worker_name == "market researcher"
        assert client.snapshot_calls == 2
        assert session.outcomes[1] == TurnOutcome.COMPLETED

        events = await collect_events(event_bus, "sess_test")
        finished = _of_type(events, EventType.TURN_FINISHED)
        assert len(finished) == 1
        assert finished[0].data["poll"]["outcome"] == "success"

    async def test_run_still_going_after_max_attempts(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [DELEGATING_MESSAGE]})])],
            statuses=[RunStatus.RUNNING],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Research Q3")
        await session.wait_idle()

        assert session.outcomes[1] == TurnOutcome.COMPLETED_WITH_TIMEOUT
        assert client.status_calls == 50
        assert len(no_sleep.waits) == 49

        events = await collect_events(event_bus, "sess_test")
        notices = _of_type(events, EventType.NOTICE)
        assert [n.data["level"] for n in notices] == ["warning"]
        assert len(_of_type(events, EventType.POLL_PROGRESS)) == 50
        assert _of_type(events, EventType.TURN_FINISHED)[0].data["metrics"]["poll_attempts"] == 50

    async def test_status_endpoint_down(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [DELEGATING_MESSAGE]})])],
            statuses=[StatusEndpointError("Status endpoint unreachable")],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Research Q3")
        await session.wait_idle()

        assert session.outcomes[1] == TurnOutcome.ERROR
        assert client.status_calls == 3

    async def test_interrupted_stream_is_confirmed_by_poll(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[
                FakeStream(
                    chunks=[sse({"messages": [ai_message("m1", "Working on it.")]})],
                    error=stream_failure(),
                )
            ],
            statuses=[RunStatus.SUCCESS],
            snapshots=[Snapshot(messages=[ai_message("m1", "Working on it. All done.")])],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        summary = await session.run_turn("Go")
        assert summary.report is not None
        assert summary.report.abrupt_end
        await session.wait_idle()

        assert session.outcomes[1] == TurnOutcome.COMPLETED
        # The stream closed the entry, so the snapshot's growth is not merged
        assert [e.text for e in session.timeline.entries] == ["Working on it."]

        events = await collect_events(event_bus, "sess_test")
        notices = _of_type(events, EventType.NOTICE)
        assert len(notices) == 1
        assert notices[0].data["level"] == "error"

    async def test_interrupted_stream_and_endpoint_down_single_notice(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[
                FakeStream(
                    chunks=[sse({"messages": [ai_message("m1", "Working on it.")]})],
                    error=stream_failure(),
                )
            ],
            statuses=[StatusEndpointError("Status endpoint unreachable")],
            snapshots=[StatusEndpointError("Snapshot endpoint unreachable")],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Go")
        await session.wait_idle()

        assert session.outcomes[1] == TurnOutcome.ERROR

        events = await collect_events(event_bus, "sess_test")
        notices = _of_type(events, EventType.NOTICE)
        assert len(notices) == 1
        assert notices[0].data["level"] == "error"
        assert "interrupted: connection reset" in notices[0].data["message"]
        assert "status endpoint could not be reached" in notices[0].data["message"]

    async def test_stream_open_failure(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(streams=[FakeStream(open_error=stream_failure("refused"))])
        session = _make_session(client, event_bus, test_settings, no_sleep)

        summary = await session.run_turn("Go")
        await session.wait_idle()

        assert summary.report is not None
        assert summary.report.abrupt_end
        assert session.outcomes[1] == TurnOutcome.COMPLETED
        assert not session.streaming


# =========================================================================
# Artifacts
# =========================================================================


class TestArtifacts:
    """Artifacts from stream and snapshot share one first-writer-wins set."""

    async def test_stream_artifact_wins_over_snapshot(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        write = ai_message(
            "m1",
            [tool_use_block("w1", name="write_file", file_path="/reports/q3.md", content="# Q3 v1")],
        )
        snapshot = Snapshot(
            messages=[write],
            files={"/reports/q3.md": {"content": "# Q3 v2"}, "/reports/appendix.md": {"content": "extra"}},
        )
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [write]})])],
            statuses=[RunStatus.SUCCESS],
            snapshots=[snapshot],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Write the report")
        await session.wait_idle()

        q3 = session.artifacts.get("q3.md")
        assert q3 is not None
        assert q3.content == "# Q3 v1"
        assert [a.file_name for a in session.artifacts] == ["q3.md", "appendix.md"]

        events = await collect_events(event_bus, "sess_test")
        assert len(_of_type(events, EventType.ARTIFACT_ADDED)) == 2

    async def test_prose_reference_placeholder(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse([ai_message("m1", "The analysis was saved to /out/analysis.md.")])])]
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Analyze")

        artifact = session.artifacts.get("analysis.md")
        assert artifact is not None
        assert "analysis.md" in artifact.content


# =========================================================================
# Multiple turns and abort
# =========================================================================


class TestTurns:
    """History replay across turns and the abort path."""

    async def test_history_replay_not_duplicated(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        first = [human_message("Hi", "h1"), ai_message("m1", "Hello")]
        second = first + [human_message("More", "h2"), ai_message("m2", "Second answer")]
        client = FakeAgentClient(
            streams=[
                FakeStream(chunks=[sse({"messages": first})]),
                FakeStream(chunks=[sse({"messages": second})]),
            ]
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Hi")
        await session.run_turn("More")

        assert [(e.turn, e.text) for e in session.timeline.entries] == [(1, "Hello"), (2, "Second answer")]
        assert client.created_threads == 1
        assert session.outcomes == {1: TurnOutcome.COMPLETED, 2: TurnOutcome.COMPLETED}

    async def test_second_turn_while_streaming_rejected(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(streams=[FakeStream(hang=True)])
        session = _make_session(client, event_bus, test_settings, no_sleep)

        task = asyncio.create_task(session.run_turn("First"))
        await asyncio.wait_for(client.stream_opened.wait(), timeout=1.0)

        with pytest.raises(TurnInProgressError):
            await session.run_turn("Second")

        assert session.abort_stream()
        summary = await asyncio.wait_for(task, timeout=1.0)
        assert summary.outcome == TurnOutcome.CANCELLED

    async def test_abort_mid_stream(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [DELEGATING_MESSAGE]})], hang=True)],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        task = asyncio.create_task(session.run_turn("Research Q3"))
        await _wait_for(lambda: len(session.timeline.entries) >= 2)
        session.abort_stream()
        summary = await asyncio.wait_for(task, timeout=1.0)

        assert summary.outcome == TurnOutcome.CANCELLED
        assert not summary.polling
        assert client.status_calls == 0
        assert not session.streaming
        assert not session.abort_stream()

        events = await collect_events(event_bus, "sess_test")
        finished = _of_type(events, EventType.TURN_FINISHED)
        assert [e.data["outcome"] for e in finished] == ["cancelled"]

    async def test_close_cancels_poller(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [DELEGATING_MESSAGE]})])],
            statuses=[RunStatus.RUNNING],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Research Q3")
        assert session.polling
        await _wait_for(lambda: client.status_calls >= 2)
        await session.close()

        assert not session.polling
        assert session.outcomes[1] == TurnOutcome.CANCELLED

    def test_to_dict(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        session = _make_session(FakeAgentClient(), event_bus, test_settings, no_sleep)
        data = session.to_dict()
        assert data["session_id"] == "sess_test"
        assert data["turn"] == 0
        assert data["timeline"] == []
        assert data["artifacts"] == []


# =========================================================================
# Polls overlapping a newer turn
# =========================================================================


def _record(*messages: dict) -> RawRecord:
    return RawRecord(data=json.dumps({"messages": list(messages)}), event="values")


class TestOverlappingPoll:
    """A poll for an earlier turn only merges what that turn owns."""

    async def test_earlier_poll_leaves_newer_message_alone(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        session = _make_session(FakeAgentClient(), event_bus, test_settings, no_sleep)
        session.timeline.begin_turn()
        await session.apply_record(_record(DELEGATING_MESSAGE), 1)
        session.timeline.begin_turn()

        snapshot = Snapshot(messages=[DELEGATING_MESSAGE, FINDING_MESSAGE, ai_message("m2", "Partial")])
        await session.apply_poll_result(snapshot, 1)
        await session.apply_record(_record(ai_message("m2", "Partial answer, complete.")), 2)

        findings = [e for e in session.timeline.entries if e.kind == EntryKind.FINDING]
        assert [(f.turn, f.correlates_to) for f in findings] == [(1, "t1")]

        answer = [e for e in session.timeline.entries if "m2" in e.source_ids]
        assert [(e.turn, e.kind, e.text) for e in answer] == [
            (2, EntryKind.MESSAGE, "Partial answer, complete.")
        ]

    async def test_earlier_poll_scoped_to_next_user_message(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [ai_message("m2", "Partial answer")]})], hang=True)]
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)
        session.timeline.begin_turn()
        await session.apply_record(_record(DELEGATING_MESSAGE), 1)
        session.timeline.close()

        task = asyncio.create_task(session.run_turn("Follow up"))
        await _wait_for(lambda: any("m2" in e.source_ids for e in session.timeline.entries))

        snapshot = Snapshot(
            messages=[
                human_message("Research Q3", "h1"),
                DELEGATING_MESSAGE,
                FINDING_MESSAGE,
                ai_message("m_summary", "Summary of findings."),
                human_message("Follow up", "h2"),
                ai_message("m2", "Partial answer, complete."),
            ]
        )
        await session.apply_poll_result(snapshot, 1)

        by_source = {e.source_ids[0]: e for e in session.timeline.entries}
        assert by_source["m_summary"].turn == 1
        assert by_source["m_summary"].closed
        assert by_source["m2"].turn == 2
        assert by_source["m2"].text == "Partial answer"
        assert by_source["tm1"].kind == EntryKind.FINDING

        session.abort_stream()
        summary = await asyncio.wait_for(task, timeout=1.0)
        assert summary.outcome == TurnOutcome.CANCELLED

    async def test_finished_poll_task_is_released(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [DELEGATING_MESSAGE]})])],
            statuses=[RunStatus.SUCCESS],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Research Q3")
        assert 1 in session._poll_tasks
        await session.wait_idle()
        await _wait_for(lambda: not session._poll_tasks)

        assert session.outcomes[1] == TurnOutcome.COMPLETED

    async def test_failed_poll_finishes_turn_and_is_released(
        self,
        event_bus: EventBus,
        test_settings: Settings,
        no_sleep: SleepRecorder,
    ) -> None:
        client = FakeAgentClient(
            streams=[FakeStream(chunks=[sse({"messages": [DELEGATING_MESSAGE]})])],
            statuses=[RuntimeError("unexpected status payload")],
        )
        session = _make_session(client, event_bus, test_settings, no_sleep)

        await session.run_turn("Research Q3")
        await session.wait_idle()
        await _wait_for(lambda: not session._poll_tasks)

        assert session.outcomes[1] == TurnOutcome.ERROR

        events = await collect_events(event_bus, "sess_test")
        assert len(_of_type(events, EventType.NOTICE)) == 1
        assert len(_of_type(events, EventType.TURN_FINISHED)) == 1
