"""HTTP client for the remote agent service.

The remote deployment exposes threads (conversations) and runs (turns):

    POST /threads                        -> {"thread_id": ...}
    POST /threads/{id}/runs/stream       -> event:/data: line stream
    GET  /threads/{id}/runs              -> run list, newest first
    GET  /threads/{id}/state             -> {"values": {"messages", "files", ...}}

Failures are translated into the stream engine's error taxonomy: anything
that prevents the live stream from being read becomes a TransportError, and
any failure of the status or snapshot endpoints becomes a
StatusEndpointError.
"""

import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from config import Settings
from errors import StatusEndpointError, TransportError
from stream.types import RunStatus, Snapshot

logger = structlog.get_logger(__name__)

_THREAD_IN_LOCATION = re.compile(r"/threads/([^/]+)")


@dataclass
class RunStream:
    """An open run stream.

    Attributes:
        thread_id: Thread identity, possibly overridden by the response.
        chunks: Raw byte chunks of the response body.
    """

    thread_id: str
    chunks: AsyncIterator[bytes]


class AgentServiceClient:
    """Async client for one remote agent deployment.

    Args:
        base_url: Deployment base URL.
        assistant_id: Assistant (graph) to run on each turn.
        api_key: Sent as ``X-Api-Key`` when set.
        stream_mode: Stream modes requested for each run.
        request_timeout: Timeout for thread, status and snapshot calls.
        stream_timeout: Read timeout for the live stream.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        assistant_id: str = "agent",
        api_key: str = "",
        stream_mode: list[str] | None = None,
        request_timeout: float = 30.0,
        stream_timeout: float = 3600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-Api-Key"] = api_key

        self.base_url = base_url.rstrip("/")
        self.assistant_id = assistant_id
        self.stream_mode = stream_mode or ["values"]
        self._request_timeout = request_timeout
        self._stream_timeout = stream_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=request_timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "AgentServiceClient":
        return cls(
            base_url=settings.agent_service_url,
            assistant_id=settings.agent_assistant_id,
            api_key=settings.agent_service_api_key,
            stream_mode=list(settings.stream_mode),
            request_timeout=settings.request_timeout_seconds,
            stream_timeout=settings.stream_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AgentServiceClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def create_thread(self) -> str:
        """Create a remote thread and return its id.

        Raises:
            TransportError: If the thread cannot be created.
        """
        try:
            response = await self._client.post("/threads", json={})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("thread_create_failed", error=str(e))
            raise TransportError(f"Failed to create thread: {e}") from e

        thread_id = data.get("thread_id") if isinstance(data, dict) else None
        if not thread_id:
            raise TransportError("Thread creation response carried no thread_id")

        logger.info("thread_created", thread_id=thread_id)
        return str(thread_id)

    @asynccontextmanager
    async def stream_run(self, thread_id: str, message: str) -> AsyncIterator[RunStream]:
        """Start a run on a thread and stream its output.

        Usage:
            >>> async with client.stream_run(thread_id, "Summarize Q3") as run:
            ...     reader = TransportReader(run.chunks)

        Raises:
            TransportError: If the stream cannot be opened or fails mid-read.
        """
        body = {
            "assistant_id": self.assistant_id,
            "input": {"messages": [{"role": "user", "content": message}]},
            "stream_mode": self.stream_mode,
        }
        timeout = httpx.Timeout(self._stream_timeout, connect=self._request_timeout)

        try:
            async with self._client.stream(
                "POST",
                f"/threads/{thread_id}/runs/stream",
                json=body,
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    logger.error(
                        "run_stream_rejected",
                        thread_id=thread_id,
                        status_code=response.status_code,
                        body=response.text[:500],
                    )
                    raise TransportError(
                        f"Run stream request failed with status {response.status_code}"
                    )

                resolved = self._thread_override(response) or thread_id
                logger.info("run_stream_opened", thread_id=resolved)
                yield RunStream(thread_id=resolved, chunks=self._iter_bytes(response))
        except httpx.HTTPError as e:
            logger.error("run_stream_failed", thread_id=thread_id, error=str(e))
            raise TransportError(f"Run stream failed: {e}") from e

    async def get_run_status(self, thread_id: str) -> RunStatus:
        """Status of the thread's latest run.

        The runs endpoint answers with a bare list, ``{"runs": [...]}`` or a
        single run object depending on deployment version.

        Raises:
            StatusEndpointError: On network failure, non-2xx or non-JSON body.
        """
        data = await self._get_json(f"/threads/{thread_id}/runs")

        if isinstance(data, list):
            runs = data
        elif isinstance(data, dict) and isinstance(data.get("runs"), list):
            runs = data["runs"]
        elif isinstance(data, dict):
            runs = [data]
        else:
            runs = []

        latest = runs[0] if runs and isinstance(runs[0], dict) else None
        status = RunStatus.parse(latest.get("status") if latest else None)
        logger.debug(
            "run_status_fetched",
            thread_id=thread_id,
            status=status.value,
            run_count=len(runs),
        )
        return status

    async def get_snapshot(self, thread_id: str) -> Snapshot:
        """Current messages, file table and artifacts of a thread.

        Raises:
            StatusEndpointError: On network failure, non-2xx or non-JSON body.
        """
        data = await self._get_json(f"/threads/{thread_id}/state")
        values = data.get("values") if isinstance(data, dict) else None
        if not isinstance(values, dict):
            values = data if isinstance(data, dict) else {}

        messages = values.get("messages")
        files = values.get("files")
        artifacts = values.get("artifacts")

        snapshot = Snapshot(
            messages=messages if isinstance(messages, list) else [],
            files=files if isinstance(files, (dict, list)) else {},
            artifacts=artifacts if isinstance(artifacts, list) else [],
        )
        logger.debug(
            "snapshot_fetched",
            thread_id=thread_id,
            message_count=snapshot.message_count,
            file_count=len(snapshot.files),
        )
        return snapshot

    async def _get_json(self, path: str) -> Any:
        try:
            response = await self._client.get(path)
        except httpx.HTTPError as e:
            raise StatusEndpointError(f"Request to {path} failed: {e}") from e

        if response.status_code >= 400:
            raise StatusEndpointError(
                f"Request to {path} failed with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise StatusEndpointError(
                f"Response from {path} was not JSON",
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _thread_override(response: httpx.Response) -> str | None:
        thread_id = response.headers.get("X-Thread-Id")
        if thread_id:
            return thread_id
        location = response.headers.get("Content-Location", "")
        match = _THREAD_IN_LOCATION.search(location)
        return match.group(1) if match else None

    @staticmethod
    async def _iter_bytes(response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            raise TransportError(f"Stream read failed: {e}") from e
