"""Authoritative status poller.

When the completion heuristics cannot rule out pending work, the poller asks
the remote service directly. Each attempt fetches the run status and,
independently, the thread snapshot; the snapshot is handed back to the
session so late results join the same timeline.

    attempt n:  wait min(base + n * step, max)   (no wait before attempt 0)
                status   = GET /threads/{id}/runs
                snapshot = GET /threads/{id}/state  -> on_snapshot()

Outcomes:
    SUCCESS  status flipped to success (followed by one final snapshot fetch)
    ERROR    status flipped to error
    TIMEOUT  max_attempts reached while the run was still going
    GAVE_UP  too many consecutive endpoint failures
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

import structlog

from config import Settings
from errors import StatusEndpointError
from stream.types import RunStatus, Snapshot

logger = structlog.get_logger(__name__)


class PollOutcome(StrEnum):
    """How a polling pass ended."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    GAVE_UP = "gave_up"


@dataclass
class PollResult:
    """Summary of a finished polling pass."""

    outcome: PollOutcome
    attempts: int
    last_status: RunStatus = RunStatus.UNKNOWN
    failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "last_status": self.last_status.value,
            "failures": self.failures,
        }


class StatusSource(Protocol):
    """The two out-of-band endpoints the poller needs."""

    async def get_run_status(self, thread_id: str) -> RunStatus: ...

    async def get_snapshot(self, thread_id: str) -> Snapshot: ...


SnapshotCallback = Callable[[Snapshot], Awaitable[None]]
ProgressCallback = Callable[[int, RunStatus], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[Any]]


def poll_interval(
    attempt: int,
    base: float = 5.0,
    step: float = 5.0,
    maximum: float = 30.0,
) -> float:
    """Seconds to wait before ``attempt``: linear growth, capped, none before the first."""
    if attempt <= 0:
        return 0.0
    return min(base + attempt * step, maximum)


class StatusPoller:
    """Bounded, backoff-driven polling of one thread's run status.

    Args:
        client: Source of run status and snapshots.
        thread_id: Thread identity of the turn being confirmed.
        on_snapshot: Receives every snapshot fetched, including the final one.
        max_attempts: Hard ceiling on attempts before reporting TIMEOUT.
        base_interval: Interval term added to every wait.
        interval_step: Per-attempt interval growth.
        max_interval: Cap on a single wait.
        max_consecutive_failures: Endpoint failures in a row that trip GAVE_UP.
        sleep: Awaitable sleep, injectable for tests.
        on_progress: Optional callback after every attempt.
    """

    def __init__(
        self,
        client: StatusSource,
        thread_id: str,
        on_snapshot: SnapshotCallback,
        *,
        max_attempts: int = 50,
        base_interval: float = 5.0,
        interval_step: float = 5.0,
        max_interval: float = 30.0,
        max_consecutive_failures: int = 3,
        sleep: SleepFunc = asyncio.sleep,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._client = client
        self._thread_id = thread_id
        self._on_snapshot = on_snapshot
        self._max_attempts = max_attempts
        self._base_interval = base_interval
        self._interval_step = interval_step
        self._max_interval = max_interval
        self._max_failures = max_consecutive_failures
        self._sleep = sleep
        self._on_progress = on_progress

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: StatusSource,
        thread_id: str,
        on_snapshot: SnapshotCallback,
        **kwargs: Any,
    ) -> "StatusPoller":
        return cls(
            client,
            thread_id,
            on_snapshot,
            max_attempts=settings.poll_max_attempts,
            base_interval=settings.poll_base_interval_seconds,
            interval_step=settings.poll_interval_step_seconds,
            max_interval=settings.poll_max_interval_seconds,
            max_consecutive_failures=settings.poll_max_consecutive_failures,
            **kwargs,
        )

    async def run(self) -> PollResult:
        log = logger.bind(thread_id=self._thread_id)
        log.info("poll_started", max_attempts=self._max_attempts)

        failures = 0
        status = RunStatus.UNKNOWN

        for attempt in range(self._max_attempts):
            wait = poll_interval(
                attempt, self._base_interval, self._interval_step, self._max_interval
            )
            if wait:
                await self._sleep(wait)

            status, failed = await self._attempt(attempt)

            if self._on_progress is not None:
                await self._on_progress(attempt + 1, status)

            if status == RunStatus.SUCCESS:
                await self._final_fetch()
                log.info("poll_succeeded", attempts=attempt + 1)
                return PollResult(PollOutcome.SUCCESS, attempt + 1, status, failures)

            if status == RunStatus.ERROR:
                log.warning("poll_run_failed", attempts=attempt + 1)
                return PollResult(PollOutcome.ERROR, attempt + 1, status, failures)

            if failed:
                failures += 1
                if failures >= self._max_failures:
                    log.error("poll_gave_up", attempts=attempt + 1, failures=failures)
                    return PollResult(PollOutcome.GAVE_UP, attempt + 1, status, failures)
            else:
                failures = 0

        log.warning("poll_timed_out", attempts=self._max_attempts, last_status=status.value)
        return PollResult(PollOutcome.TIMEOUT, self._max_attempts, status, failures)

    async def _attempt(self, attempt: int) -> tuple[RunStatus, bool]:
        """Run one status + snapshot round. Returns (status, failed)."""
        failed = False
        status = RunStatus.UNKNOWN

        try:
            status = await self._client.get_run_status(self._thread_id)
        except StatusEndpointError as e:
            failed = True
            logger.warning(
                "poll_status_failed",
                thread_id=self._thread_id,
                attempt=attempt,
                error=str(e),
                status_code=e.status_code,
            )

        try:
            snapshot = await self._client.get_snapshot(self._thread_id)
        except StatusEndpointError as e:
            failed = True
            logger.warning(
                "poll_snapshot_failed",
                thread_id=self._thread_id,
                attempt=attempt,
                error=str(e),
                status_code=e.status_code,
            )
        else:
            await self._on_snapshot(snapshot)

        logger.debug(
            "poll_attempt_finished",
            thread_id=self._thread_id,
            attempt=attempt,
            status=status.value,
            failed=failed,
        )
        return status, failed

    async def _final_fetch(self) -> None:
        # Results can land a moment after the status flips
        try:
            snapshot = await self._client.get_snapshot(self._thread_id)
        except StatusEndpointError as e:
            logger.warning("poll_final_fetch_failed", thread_id=self._thread_id, error=str(e))
            return
        await self._on_snapshot(snapshot)
