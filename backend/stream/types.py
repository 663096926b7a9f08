"""Data model for the stream reconciliation engine.

Records flow through the engine in three shapes:

- RawRecord: one ``event:``/``data:`` pair reassembled by the transport reader.
- SemanticUnit: a normalized atom (TextFragment, Delegation, Finding,
  CoordinationQuestion, ErrorSignal). Every variant except ErrorSignal carries
  an identity that is stable across redelivery.
- TimelineEntry: the aggregated, renderable unit owned by a session.
"""

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

DEFAULT_WORKER_NAME = "worker"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawRecord:
    """One transport-level record.

    Attributes:
        data: The raw ``data:`` payload text, still to be parsed as JSON.
        event: The most recent ``event:`` label seen before the payload.
    """

    data: str
    event: str | None = None


# ---------------------------------------------------------------------------
# Semantic units
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextFragment:
    """A piece of assistant-authored prose.

    Attributes:
        source_id: Identity of the message (or content block) the text came from.
        text: The prose itself.
        continuation: True when the identity tracker reduced a redelivered,
            grown message to the newly streamed suffix.
    """

    source_id: str
    text: str
    continuation: bool = False


@dataclass(frozen=True)
class Delegation:
    """A lead agent's request to a specialized sub-task.

    Attributes:
        id: The invocation identity (the tool_use block id).
        worker_name: Display name of the worker the task was given to.
        instructions: The task description handed to the worker.
        tool_name: Raw tool name of the invocation.
        tool_input: Raw invocation input, kept for artifact extraction.
    """

    id: str
    worker_name: str
    instructions: str
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Finding:
    """A sub-task result correlated to a prior Delegation.

    Attributes:
        id: Identity of the result itself (block id or message id).
        correlates_to: Identity of the Delegation this result answers.
        payload: The result content, string or structured.
        worker_name: Resolved worker name, or the default label on a miss.
    """

    id: str
    correlates_to: str
    payload: Any = field(compare=False)
    worker_name: str = DEFAULT_WORKER_NAME


@dataclass(frozen=True)
class CoordinationQuestion:
    """Prose classified as internal agent-to-agent clarification."""

    source_id: str
    text: str


@dataclass(frozen=True)
class ErrorSignal:
    """An error reported by the upstream payload or by the transport.

    Attributes:
        message: Human-readable error text.
        transport: True when the stream itself failed (the turn ends).
    """

    message: str
    transport: bool = False


SemanticUnit = TextFragment | Delegation | Finding | CoordinationQuestion | ErrorSignal


def payload_text(payload: Any) -> str:
    """Render a Finding payload as display text.

    Strings pass through; block lists are flattened to their text parts;
    objects prefer ``text`` then ``content``; anything else is JSON encoded.
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, list):
        parts: list[str] = []
        for block in payload:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                parts.append(str(block["text"]))
            elif isinstance(block, dict) and block.get("content"):
                parts.append(payload_text(block["content"]))
            else:
                parts.append(json.dumps(block, indent=2, default=str))
        return "\n\n".join(parts)
    if isinstance(payload, dict):
        if "text" in payload:
            return str(payload["text"])
        if "content" in payload:
            return payload_text(payload["content"])
    return json.dumps(payload, indent=2, default=str)


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


class EntryKind(StrEnum):
    """Renderable timeline entry kinds."""

    MESSAGE = "message"
    DELEGATION = "delegation"
    FINDING = "finding"
    COORDINATION_QUESTION = "coordination_question"


@dataclass
class TimelineEntry:
    """One renderable entry of a session timeline.

    Prose entries (MESSAGE, COORDINATION_QUESTION) grow by concatenation while
    open. The kind of a prose entry is fixed when it is created.
    """

    entry_id: str
    kind: EntryKind
    turn: int
    text: str = ""
    source_ids: list[str] = field(default_factory=list)
    worker_name: str | None = None
    correlates_to: str | None = None
    payload: Any = None
    closed: bool = False

    @property
    def trailing_id(self) -> str | None:
        """Identity of the most recent fragment merged into this entry."""
        return self.source_ids[-1] if self.source_ids else None

    @property
    def is_prose(self) -> bool:
        return self.kind in (EntryKind.MESSAGE, EntryKind.COORDINATION_QUESTION)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the event channel and the HTTP API."""
        return {
            "entry_id": self.entry_id,
            "kind": self.kind.value,
            "turn": self.turn,
            "text": self.text,
            "worker_name": self.worker_name,
            "correlates_to": self.correlates_to,
            "closed": self.closed,
        }


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


class ArtifactSource(StrEnum):
    """Where an artifact was discovered."""

    DELEGATION = "delegation"
    FINDING = "finding"
    TEXT_REFERENCE = "text_reference"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class Artifact:
    """A generated file, keyed uniquely by ``file_name`` within a session."""

    path: str
    file_name: str
    content: str
    source: ArtifactSource = ArtifactSource.DELEGATION

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "file_name": self.file_name,
            "size": len(self.content),
            "source": self.source.value,
        }


# ---------------------------------------------------------------------------
# Run status and outcomes
# ---------------------------------------------------------------------------


class RunStatus(StrEnum):
    """Authoritative status of a remote run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.ERROR)

    @classmethod
    def parse(cls, value: Any) -> "RunStatus":
        """Map an upstream status string onto RunStatus, defaulting to UNKNOWN."""
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.UNKNOWN


class TurnOutcome(StrEnum):
    """Final completion outcome reported with ``turn_finished``."""

    COMPLETED = "completed"
    COMPLETED_WITH_TIMEOUT = "completed-with-timeout"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class Snapshot:
    """Current message and file state of a remote thread.

    Attributes:
        messages: Message objects in the same shapes the stream delivers.
        files: The file table, a mapping of path to file data (or a list).
        artifacts: Explicit artifact objects, when the deployment reports any.
    """

    messages: list[Any] = field(default_factory=list)
    files: dict[str, Any] | list[Any] = field(default_factory=dict)
    artifacts: list[Any] = field(default_factory=list)

    @property
    def message_count(self) -> int:
        return len(self.messages)
