"""Identity tracker: session-scoped deduplication of SemanticUnits.

Every new stream connection replays the thread's history and every poll
re-fetches an overlapping snapshot, so the same logical unit is seen many
times. The tracker collapses each identity to one logical occurrence:

- Prose (TextFragment, CoordinationQuestion): the first delivery passes. A
  later delivery whose text extends what was already delivered is reduced to
  the new suffix and passed on as a continuation; anything else is dropped.
- Delegation: once per invocation id.
- Finding: once per correlated Delegation id, across stream and polls.
- ErrorSignal: never deduplicated.

The tracker is never reset between turns.
"""

import structlog

from stream.types import (
    CoordinationQuestion,
    Delegation,
    ErrorSignal,
    Finding,
    SemanticUnit,
    TextFragment,
)

logger = structlog.get_logger(__name__)


class IdentityTracker:
    """Filters SemanticUnits so each identity is processed once.

    Attributes:
        duplicates_dropped: Units dropped as redeliveries since creation.
    """

    def __init__(self) -> None:
        self._delivered_text: dict[str, str] = {}
        self._delegations: set[str] = set()
        self._findings: set[str] = set()
        self._finding_ids: set[str] = set()
        self.duplicates_dropped = 0

    def admit(self, unit: SemanticUnit) -> SemanticUnit | None:
        """Return the unit to process, a reduced continuation, or None to drop it."""
        if isinstance(unit, ErrorSignal):
            return unit
        if isinstance(unit, TextFragment):
            return self._admit_text(unit)
        if isinstance(unit, CoordinationQuestion):
            fragment = self._admit_text(TextFragment(source_id=unit.source_id, text=unit.text))
            if fragment is None:
                return None
            if fragment.continuation:
                return fragment
            return unit
        if isinstance(unit, Delegation):
            return self._admit_once(unit, unit.id, self._delegations)
        if isinstance(unit, Finding):
            return self._admit_finding(unit)
        return None

    def has_delegation(self, delegation_id: str) -> bool:
        return delegation_id in self._delegations

    def has_finding_for(self, delegation_id: str) -> bool:
        return delegation_id in self._findings

    def delivered_text(self, source_id: str) -> str | None:
        return self._delivered_text.get(source_id)

    def _admit_once(
        self,
        unit: SemanticUnit,
        identity: str,
        seen: set[str],
    ) -> SemanticUnit | None:
        if identity in seen:
            self.duplicates_dropped += 1
            return None
        seen.add(identity)
        return unit

    def _admit_finding(self, finding: Finding) -> Finding | None:
        # A tool-channel message streams as prose but comes back from a
        # snapshot as a Finding; both carry the same message identity.
        if finding.id in self._delivered_text:
            self._findings.add(finding.correlates_to)
            self._finding_ids.add(finding.id)
            self.duplicates_dropped += 1
            return None
        admitted = self._admit_once(finding, finding.correlates_to, self._findings)
        if admitted is not None:
            self._finding_ids.add(finding.id)
        return admitted

    def _admit_text(self, fragment: TextFragment) -> TextFragment | None:
        source_id = fragment.source_id
        if source_id in self._finding_ids:
            self.duplicates_dropped += 1
            return None
        delivered = self._delivered_text.get(source_id)

        if delivered is None:
            self._delivered_text[source_id] = fragment.text
            # A first delta opens the entry like any other first delivery
            return TextFragment(source_id=source_id, text=fragment.text)

        if fragment.continuation:
            # Upstream already sent only the new suffix
            if not fragment.text:
                return None
            self._delivered_text[source_id] = delivered + fragment.text
            return fragment

        if fragment.text == delivered or delivered.startswith(fragment.text):
            self.duplicates_dropped += 1
            return None

        if fragment.text.startswith(delivered):
            self._delivered_text[source_id] = fragment.text
            return TextFragment(
                source_id=source_id,
                text=fragment.text[len(delivered):],
                continuation=True,
            )

        self.duplicates_dropped += 1
        logger.debug(
            "text_redelivery_diverged",
            source_id=source_id,
            delivered_length=len(delivered),
            received_length=len(fragment.text),
        )
        return None
