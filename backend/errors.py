"""Exception types for stream reconciliation.

Only transport-level stream failure is fatal to a turn. Parse failures are
absorbed per record and status endpoint failures are counted by the poller's
circuit breaker, so neither escapes the stream engine.
"""


class StreamError(Exception):
    """Base class for failures talking to the remote agent service."""


class TransportError(StreamError):
    """The live event stream could not be opened or failed mid-read."""


class ParseError(StreamError):
    """A single stream record could not be decoded."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class StatusEndpointError(StreamError):
    """A run status or snapshot request failed at the transport level."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TurnInProgressError(StreamError):
    """A new turn was requested while the session's stream is still live."""
