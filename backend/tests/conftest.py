"""Shared test fixtures for backend tests.

Provides a fresh EventBus, a scripted fake of the remote agent service
client, wire-format helpers and a recording sleep so tests never touch the
network or wait on real poll intervals.
"""

import asyncio
import json
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from stream.session import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from config import Settings  # noqa: E402
from errors import TransportError  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import TimelineEvent  # noqa: E402
from remote.client import RunStream  # noqa: E402
from stream.types import RunStatus, Snapshot  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    return EventBus()


async def collect_events(event_bus: EventBus, session_id: str) -> list[TimelineEvent]:
    """Subscribe to a session and drain everything buffered so far."""
    queue = event_bus.subscribe(session_id)
    events: list[TimelineEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Settings and time
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> Settings:
    """Default poller settings, isolated from any local .env file."""
    return Settings(_env_file=None)


class SleepRecorder:
    """Awaitable stand-in for asyncio.sleep that records requested waits."""

    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture()
def no_sleep() -> SleepRecorder:
    return SleepRecorder()


# ---------------------------------------------------------------------------
# Wire-format helpers
# ---------------------------------------------------------------------------


def sse(*payloads: Any, event: str = "values") -> bytes:
    """Encode payloads as event:/data: lines the way the remote service sends them."""
    lines: list[str] = []
    for payload in payloads:
        lines.append(f"event: {event}\n")
        lines.append(f"data: {json.dumps(payload)}\n\n")
    return "".join(lines).encode("utf-8")


def ai_message(message_id: str, content: Any, **extra: Any) -> dict[str, Any]:
    return {"type": "ai", "id": message_id, "content": content, **extra}


def human_message(content: str, message_id: str = "h1") -> dict[str, Any]:
    return {"type": "human", "id": message_id, "content": content}


def tool_message(message_id: str, content: Any, tool_call_id: str | None = None) -> dict[str, Any]:
    message = {"type": "tool", "id": message_id, "content": content}
    if tool_call_id is not None:
        message["tool_call_id"] = tool_call_id
    return message


def text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def tool_use_block(block_id: str, name: str = "task", **tool_input: Any) -> dict[str, Any]:
    return {"type": "tool_use", "id": block_id, "name": name, "input": tool_input}


def tool_result_block(tool_use_id: str, content: Any) -> dict[str, Any]:
    return {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}


# ---------------------------------------------------------------------------
# Fake remote agent service
# ---------------------------------------------------------------------------


@dataclass
class FakeStream:
    """One scripted run stream.

    Attributes:
        chunks: Byte chunks delivered in order.
        error: Raised after the chunks to simulate a mid-read failure.
        hang: Block after the chunks until the reader aborts.
        open_error: Raised instead of opening the stream.
    """

    chunks: list[bytes] = field(default_factory=list)
    error: Exception | None = None
    hang: bool = False
    open_error: Exception | None = None


class FakeAgentClient:
    """Scripted stand-in for AgentServiceClient.

    Statuses and snapshots are consumed in order; the last item repeats once
    the script runs out. An Exception item is raised instead of returned.
    """

    def __init__(
        self,
        streams: list[FakeStream] | None = None,
        statuses: list[RunStatus | Exception] | None = None,
        snapshots: list[Snapshot | Exception] | None = None,
        thread_id: str = "thread_1",
    ) -> None:
        self.streams = list(streams or [])
        self.statuses = list(statuses or [RunStatus.SUCCESS])
        self.snapshots = list(snapshots or [Snapshot()])
        self.thread_id = thread_id
        self.created_threads = 0
        self.messages: list[str] = []
        self.status_calls = 0
        self.snapshot_calls = 0
        self.stream_opened = asyncio.Event()

    async def create_thread(self) -> str:
        self.created_threads += 1
        return self.thread_id

    @asynccontextmanager
    async def stream_run(self, thread_id: str, message: str) -> AsyncIterator[RunStream]:
        self.messages.append(message)
        script = self.streams.pop(0) if self.streams else FakeStream()
        if script.open_error is not None:
            raise script.open_error

        async def chunks() -> AsyncIterator[bytes]:
            for chunk in script.chunks:
                yield chunk
                await asyncio.sleep(0)
            if script.error is not None:
                raise script.error
            if script.hang:
                await asyncio.Event().wait()

        self.stream_opened.set()
        yield RunStream(thread_id=thread_id, chunks=chunks())

    async def get_run_status(self, thread_id: str) -> RunStatus:
        item = self._next(self.statuses, self.status_calls)
        self.status_calls += 1
        if isinstance(item, Exception):
            raise item
        return item

    async def get_snapshot(self, thread_id: str) -> Snapshot:
        item = self._next(self.snapshots, self.snapshot_calls)
        self.snapshot_calls += 1
        if isinstance(item, Exception):
            raise item
        return item

    @staticmethod
    def _next(script: list[Any], index: int) -> Any:
        return script[min(index, len(script) - 1)]


def stream_failure(message: str = "connection reset") -> TransportError:
    return TransportError(message)
