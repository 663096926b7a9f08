"""Transport reader: byte stream to RawRecords.

The remote service sends newline-delimited ``event:``/``data:`` pairs. Chunk
boundaries from the network rarely agree with line boundaries, so partial
trailing lines are buffered until the next chunk (or end of stream) completes
them. Multi-byte UTF-8 sequences split across chunks are handled by an
incremental decoder.

Usage:
    >>> reader = TransportReader(response.aiter_bytes())
    >>> async for item in reader.records():
    ...     if isinstance(item, ErrorSignal):
    ...         break
    ...     session.apply_record(item)
"""

import asyncio
import codecs
import contextlib
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import structlog

from errors import TransportError
from stream.types import ErrorSignal, RawRecord

logger = structlog.get_logger(__name__)

_EOF = object()
_ABORTED = object()


async def _pull(iterator: AsyncIterator[bytes]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _EOF


class TransportReader:
    """Reassembles a chunked byte source into discrete RawRecords.

    The reader does not retry. A transport failure is surfaced once as an
    ``ErrorSignal(transport=True)`` and ends the sequence. ``abort()`` stops
    reading at the next suspension point and releases the source; no further
    records are produced after an abort.

    Attributes:
        records_read: Number of RawRecords produced so far.
        chunks_read: Number of byte chunks consumed so far.
    """

    def __init__(self, source: AsyncIterable[bytes], encoding: str = "utf-8") -> None:
        self._source = source
        self._encoding = encoding
        self._abort_event = asyncio.Event()
        self._current_event: str | None = None
        self.records_read = 0
        self.chunks_read = 0

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    def abort(self) -> None:
        """Stop reading as soon as possible. Safe to call more than once."""
        if not self._abort_event.is_set():
            logger.info("transport_abort_requested", chunks_read=self.chunks_read)
        self._abort_event.set()

    async def records(self) -> AsyncIterator[RawRecord | ErrorSignal]:
        """Yield records in arrival order until the source ends, fails, or is aborted."""
        decoder = codecs.getincrementaldecoder(self._encoding)(errors="replace")
        iterator = aiter(self._source)
        buffer = ""

        try:
            while not self.aborted:
                try:
                    chunk = await self._next_chunk(iterator)
                except (TransportError, OSError) as e:
                    logger.error(
                        "transport_read_failed",
                        error=str(e),
                        chunks_read=self.chunks_read,
                    )
                    yield ErrorSignal(message=str(e) or "Stream read failed", transport=True)
                    return

                if chunk is _ABORTED:
                    return
                if chunk is _EOF:
                    buffer += decoder.decode(b"", final=True)
                    break

                self.chunks_read += 1
                buffer += decoder.decode(chunk)

                # Keep the incomplete trailing line for the next chunk
                lines = buffer.split("\n")
                buffer = lines.pop()
                for line in lines:
                    record = self._parse_line(line)
                    if record is not None:
                        yield record
                        if self.aborted:
                            return

            if buffer and not self.aborted:
                record = self._parse_line(buffer)
                if record is not None:
                    yield record
        finally:
            await self._release(iterator)

    async def _next_chunk(self, iterator: AsyncIterator[bytes]) -> Any:
        """Await the next chunk, returning early with _ABORTED on abort."""
        pull_task = asyncio.ensure_future(_pull(iterator))
        abort_task = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {pull_task, abort_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            pull_task.cancel()
            raise
        finally:
            abort_task.cancel()

        if pull_task in done:
            return pull_task.result()

        pull_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, TransportError, OSError):
            await pull_task
        return _ABORTED

    def _parse_line(self, line: str) -> RawRecord | None:
        trimmed = line.strip()
        if not trimmed or trimmed.startswith(":"):
            return None

        if trimmed.startswith("event:"):
            self._current_event = trimmed[len("event:"):].strip() or None
            return None

        if trimmed.startswith("data:"):
            self.records_read += 1
            return RawRecord(
                data=trimmed[len("data:"):].strip(),
                event=self._current_event,
            )

        # id:, retry: and anything unrecognized carry nothing we render
        logger.debug("transport_line_ignored", prefix=trimmed[:16])
        return None

    async def _release(self, iterator: AsyncIterator[bytes]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except (RuntimeError, TransportError, OSError) as e:
            logger.warning("transport_release_failed", error=str(e))
