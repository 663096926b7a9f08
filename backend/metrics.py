"""In-memory stream metrics for conversation turns.

This module provides the MetricsCollector class that accumulates per-turn
counters while a turn streams and polls. When the turn finishes, the final
numbers are logged and attached to the ``turn_finished`` event.

Usage:
    >>> from metrics import MetricsCollector, turn_key
    >>> collector = MetricsCollector()
    >>> key = turn_key("sess_abc123", 1)
    >>> collector.start(key)
    >>> collector.increment(key, "records_read")
    >>> collector.increment(key, "duplicates_dropped", 3)
    >>> final = collector.finish(key)
    >>> print(final)  # TurnMetricsData(...)
"""

import time
from dataclasses import dataclass, field, fields

import structlog

logger = structlog.get_logger(__name__)


def turn_key(session_id: str, turn: int) -> str:
    return f"{session_id}:{turn}"


@dataclass
class TurnMetricsData:
    """Accumulated metrics for a single turn.

    Attributes:
        records_read: RawRecords produced by the transport reader.
        parse_errors: Records dropped because their payload failed to decode.
        units_normalized: SemanticUnits produced by the normalizer.
        duplicates_dropped: Units the identity tracker collapsed.
        delegations: Delegation entries added to the timeline.
        findings: Finding entries added to the timeline.
        artifacts: Artifacts added to the session's set.
        poll_attempts: Status poll attempts made for this turn.
        duration_ms: Wall-clock turn duration (set by finish()).
        started_at: Unix timestamp when tracking began.
    """

    records_read: int = 0
    parse_errors: int = 0
    units_normalized: int = 0
    duplicates_dropped: int = 0
    delegations: int = 0
    findings: int = 0
    artifacts: int = 0
    poll_attempts: int = 0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, int]:
        """Counters as a plain dict, without the start timestamp."""
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "started_at"}


_COUNTERS = frozenset(f.name for f in fields(TurnMetricsData)) - {"duration_ms", "started_at"}


class MetricsCollector:
    """In-memory collector that tracks metrics per turn key.

    Attributes:
        _turns: Mapping from turn key to its metrics data.
    """

    def __init__(self) -> None:
        self._turns: dict[str, TurnMetricsData] = {}
        logger.debug("metrics_collector_initialized")

    def start(self, key: str) -> None:
        """Begin tracking a turn. A no-op when the key is already tracked."""
        if key in self._turns:
            logger.debug("metrics_already_tracking", key=key)
            return
        self._turns[key] = TurnMetricsData()

    def increment(self, key: str, counter: str, amount: int = 1) -> None:
        """Add ``amount`` to one counter of a tracked turn.

        Untracked keys and unknown counter names are ignored with a warning.
        """
        data = self._turns.get(key)
        if data is None:
            logger.warning("metrics_record_no_turn", key=key, counter=counter)
            return
        if counter not in _COUNTERS:
            logger.warning("metrics_unknown_counter", key=key, counter=counter)
            return
        setattr(data, counter, getattr(data, counter) + amount)

    def finish(self, key: str) -> TurnMetricsData | None:
        """Finalize a turn, calculating its duration, and stop tracking it.

        Returns:
            The final TurnMetricsData, or None if the key was not tracked.
        """
        data = self._turns.pop(key, None)
        if data is None:
            logger.warning("metrics_finish_no_turn", key=key)
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)
        logger.info("metrics_turn_finished", key=key, **data.to_dict())
        return data

    def get(self, key: str) -> TurnMetricsData | None:
        """Current (in-progress) metrics for a turn, without removing them."""
        return self._turns.get(key)
