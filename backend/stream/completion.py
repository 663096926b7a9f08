"""Completion heuristics: is the remote turn really finished?

Stream termination is not a reliable "done" signal. Once the live stream of a
turn ends, the turn's timeline entries are checked for independent "still
working" signals; any one of them marks the turn as having pending work, which
hands the decision to the authoritative status poller.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from stream.patterns import DEFAULT_PATTERNS, HeuristicPatterns
from stream.types import EntryKind, TimelineEntry

logger = structlog.get_logger(__name__)


@dataclass
class CompletionReport:
    """Which pending-work signals fired for a turn.

    Attributes:
        lexical: Some entry reads like a clarification question.
        balance: More delegations than correlated findings.
        progress: The latest progress report still has open items.
        safety_net: At least one delegation happened during the turn.
        abrupt_end: The stream failed instead of closing normally.
        empty_stream: The stream closed without delivering a single record.
        unresolved: Delegation ids with no correlated finding yet.
    """

    lexical: bool = False
    balance: bool = False
    progress: bool = False
    safety_net: bool = False
    abrupt_end: bool = False
    empty_stream: bool = False
    unresolved: list[str] = field(default_factory=list)

    @property
    def reasons(self) -> list[str]:
        names = ("lexical", "balance", "progress", "safety_net", "abrupt_end", "empty_stream")
        return [name for name in names if getattr(self, name)]

    @property
    def pending(self) -> bool:
        return bool(self.reasons)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "reasons": self.reasons,
            "unresolved": list(self.unresolved),
        }


class CompletionHeuristics:
    """Evaluates a turn's entries against the pending-work pattern sets.

    Args:
        patterns: Pattern bundle for the lexical and progress signals.
        safety_net: Treat any delegation as pending work. Relaxing this trades
            late artifacts for fewer unnecessary polls.
    """

    def __init__(
        self,
        patterns: HeuristicPatterns = DEFAULT_PATTERNS,
        safety_net: bool = True,
    ) -> None:
        self._patterns = patterns
        self._safety_net = safety_net

    def evaluate(
        self,
        entries: list[TimelineEntry],
        *,
        abrupt_end: bool = False,
        records_read: int | None = None,
    ) -> CompletionReport:
        report = CompletionReport(
            abrupt_end=abrupt_end,
            empty_stream=records_read == 0,
        )

        report.lexical = any(self._is_pending_question(entry) for entry in entries)

        delegation_ids = [
            entry.source_ids[0]
            for entry in entries
            if entry.kind == EntryKind.DELEGATION and entry.source_ids
        ]
        correlated = {
            entry.correlates_to
            for entry in entries
            if entry.kind == EntryKind.FINDING and entry.correlates_to in delegation_ids
        }
        report.unresolved = [d for d in delegation_ids if d not in correlated]
        report.balance = len(delegation_ids) > len(correlated)

        report.progress = self._has_open_progress(entries)
        report.safety_net = self._safety_net and bool(delegation_ids)

        logger.debug(
            "completion_evaluated",
            entries=len(entries),
            delegations=len(delegation_ids),
            findings=len(correlated),
            reasons=report.reasons,
        )
        return report

    def _is_pending_question(self, entry: TimelineEntry) -> bool:
        if entry.kind == EntryKind.DELEGATION:
            return False
        return self._patterns.pending_question.matches(entry.text)

    def _has_open_progress(self, entries: list[TimelineEntry]) -> bool:
        # Only the most recent report counts; earlier ones are superseded
        for entry in reversed(entries):
            statuses = self._progress_statuses(entry)
            if statuses is not None:
                return any(s in self._patterns.progress_open_statuses for s in statuses)
        return False

    def _progress_statuses(self, entry: TimelineEntry) -> list[str] | None:
        if entry.kind == EntryKind.DELEGATION:
            todos = entry.payload.get("todos") if isinstance(entry.payload, dict) else None
            if isinstance(todos, list):
                return [
                    str(item.get("status", "")).lower()
                    for item in todos
                    if isinstance(item, dict)
                ]
            return None

        text = entry.text
        if not text or not any(marker in text for marker in self._patterns.progress_markers):
            return None
        statuses = [s.lower() for s in self._patterns.progress_status.findall(text)]
        return statuses or None
