"""Tests for stream/timeline.py -- aggregation into an ordered timeline."""

import pytest

from stream.identity import IdentityTracker
from stream.patterns import HeuristicPatterns, PatternSet
from stream.timeline import PROSE_SEPARATOR, TimelineAggregator
from stream.types import (
    CoordinationQuestion,
    Delegation,
    EntryKind,
    ErrorSignal,
    Finding,
    SemanticUnit,
    TextFragment,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Pipeline:
    """Identity tracker feeding an aggregator, as a session wires them."""

    def __init__(self, aggregator: TimelineAggregator | None = None) -> None:
        self.tracker = IdentityTracker()
        self.timeline = aggregator or TimelineAggregator()
        if self.timeline.turn == 0:
            self.timeline.begin_turn()

    def feed(self, *units: SemanticUnit, turn: int | None = None) -> None:
        for unit in units:
            admitted = self.tracker.admit(unit)
            if admitted is not None:
                self.timeline.apply(admitted, turn=turn)


@pytest.fixture()
def pipeline() -> _Pipeline:
    return _Pipeline()


QUESTION_TEXT = "Would you like me to: A) pull EU data B) focus on APAC?"


# =========================================================================
# Prose aggregation
# =========================================================================


class TestProse:
    """Text fragments grow the open prose entry."""

    def test_growing_redelivery_yields_single_entry(self, pipeline: _Pipeline) -> None:
        pipeline.feed(
            TextFragment(source_id="m1", text="Hello"),
            TextFragment(source_id="m1", text="Hello world"),
        )
        entries = pipeline.timeline.entries
        assert len(entries) == 1
        assert entries[0].kind == EntryKind.MESSAGE
        assert entries[0].text == "Hello world"

    def test_repeated_history_replay_is_idempotent(self, pipeline: _Pipeline) -> None:
        for _ in range(3):
            pipeline.feed(TextFragment(source_id="m1", text="Hello world"))
        assert [e.text for e in pipeline.timeline.entries] == ["Hello world"]

    def test_new_identity_appends_to_open_prose(self, pipeline: _Pipeline) -> None:
        pipeline.feed(
            TextFragment(source_id="m1", text="First."),
            TextFragment(source_id="m2", text="Second."),
        )
        entries = pipeline.timeline.entries
        assert len(entries) == 1
        assert entries[0].text == "First." + PROSE_SEPARATOR + "Second."
        assert entries[0].source_ids == ["m1", "m2"]

    def test_continuation_of_earlier_identity_in_merged_entry_dropped(self, pipeline: _Pipeline) -> None:
        pipeline.feed(
            TextFragment(source_id="m1", text="First."),
            TextFragment(source_id="m2", text="Second."),
            TextFragment(source_id="m1", text="First. More"),
        )
        assert pipeline.timeline.entries[0].text == "First." + PROSE_SEPARATOR + "Second."

    def test_error_signal_does_not_touch_timeline(self, pipeline: _Pipeline) -> None:
        pipeline.feed(ErrorSignal(message="boom"))
        assert pipeline.timeline.entries == []


# =========================================================================
# Classification
# =========================================================================


class TestClassification:
    """Kind is decided once when a prose entry is created."""

    def test_coordination_question_classified_at_creation(self, pipeline: _Pipeline) -> None:
        pipeline.feed(TextFragment(source_id="m1", text=QUESTION_TEXT))
        assert pipeline.timeline.entries[0].kind == EntryKind.COORDINATION_QUESTION

    def test_kind_not_revisited_as_text_grows(self, pipeline: _Pipeline) -> None:
        pipeline.feed(
            TextFragment(source_id="m1", text="Here is the summary of findings."),
            TextFragment(
                source_id="m1",
                text="Here is the summary of findings. Would you like me to: dig deeper?",
            ),
        )
        entry = pipeline.timeline.entries[0]
        assert entry.kind == EntryKind.MESSAGE
        assert entry.text.endswith("dig deeper?")

    def test_short_text_never_coordination(self, pipeline: _Pipeline) -> None:
        pipeline.feed(TextFragment(source_id="m1", text="A) yes"))
        assert pipeline.timeline.entries[0].kind == EntryKind.MESSAGE

    def test_explicit_coordination_unit(self, pipeline: _Pipeline) -> None:
        pipeline.feed(CoordinationQuestion(source_id="q1", text="ok?"))
        assert pipeline.timeline.entries[0].kind == EntryKind.COORDINATION_QUESTION

    def test_custom_patterns(self) -> None:
        patterns = HeuristicPatterns(coordination=PatternSet(name="custom", phrases=("PING",)))
        custom = _Pipeline(TimelineAggregator(patterns))
        custom.feed(TextFragment(source_id="m1", text="PING the researcher"))
        assert custom.timeline.entries[0].kind == EntryKind.COORDINATION_QUESTION


# =========================================================================
# Structured entries and closing
# =========================================================================


class TestStructuredEntries:
    """Delegations and findings close the open entry and push their own."""

    def test_delegation_closes_prose(self, pipeline: _Pipeline) -> None:
        pipeline.feed(
            TextFragment(source_id="m1", text="Delegating."),
            Delegation(id="t1", worker_name="analyst", instructions="Research demand"),
            TextFragment(source_id="m1", text="Delegating. Also this"),
        )
        entries = pipeline.timeline.entries
        assert [e.kind for e in entries] == [EntryKind.MESSAGE, EntryKind.DELEGATION]
        assert entries[0].text == "Delegating."
        assert entries[0].closed
        assert entries[1].worker_name == "analyst"
        assert entries[1].text == "Research demand"

    def test_text_after_finding_opens_new_entry(self, pipeline: _Pipeline) -> None:
        pipeline.feed(
            Delegation(id="t1", worker_name="analyst", instructions="go"),
            Finding(id="t1", correlates_to="t1", payload={"text": "Result"}, worker_name="analyst"),
            TextFragment(source_id="m2", text="Summary"),
        )
        kinds = [e.kind for e in pipeline.timeline.entries]
        assert kinds == [EntryKind.DELEGATION, EntryKind.FINDING, EntryKind.MESSAGE]
        finding = pipeline.timeline.entries[1]
        assert finding.text == "Result"
        assert finding.correlates_to == "t1"
        assert finding.closed

    def test_duplicate_finding_one_entry(self, pipeline: _Pipeline) -> None:
        finding = Finding(id="t1", correlates_to="t1", payload="x")
        pipeline.feed(finding, finding)
        assert len(pipeline.timeline.entries) == 1

    def test_entry_ids_unique(self, pipeline: _Pipeline) -> None:
        pipeline.timeline.apply(Delegation(id="t1", worker_name="a", instructions=""))
        pipeline.timeline.apply(Delegation(id="t1", worker_name="a", instructions=""))
        ids = [e.entry_id for e in pipeline.timeline.entries]
        assert len(set(ids)) == 2


class TestTurns:
    """Turn boundaries close entries and late units stay standalone."""

    def test_begin_turn_closes_open_entry(self, pipeline: _Pipeline) -> None:
        pipeline.feed(TextFragment(source_id="m1", text="Turn one"))
        assert pipeline.timeline.begin_turn() == 2
        pipeline.feed(TextFragment(source_id="m2", text="Turn two"))

        entries = pipeline.timeline.entries
        assert len(entries) == 2
        assert entries[0].closed
        assert [e.turn for e in entries] == [1, 2]
        assert pipeline.timeline.entries_for_turn(2)[0].text == "Turn two"

    def test_late_unit_for_earlier_turn_is_standalone(self, pipeline: _Pipeline) -> None:
        pipeline.timeline.begin_turn()
        pipeline.feed(TextFragment(source_id="m2", text="Current"))
        pipeline.feed(TextFragment(source_id="m1", text="Late"), turn=1)

        current = pipeline.timeline.open_entry
        assert current is not None
        assert current.text == "Current"
        late = pipeline.timeline.entries[-1]
        assert late.turn == 1
        assert late.closed

    def test_close_makes_continuation_a_no_op(self, pipeline: _Pipeline) -> None:
        pipeline.feed(TextFragment(source_id="m1", text="Hello"))
        pipeline.timeline.close()
        pipeline.feed(TextFragment(source_id="m1", text="Hello again"))
        entries = pipeline.timeline.entries
        assert len(entries) == 1
        assert entries[0].text == "Hello"
