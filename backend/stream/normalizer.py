"""Event normalizer: RawRecord payloads to SemanticUnits.

Upstream payloads arrive in several shapes:

- ``{"messages": [...]}`` (full state, history replay, snapshots)
- ``[...]`` (bare message batches from streaming chunks)
- ``{"error": ..., "message": ...}`` (error reports)
- anything else (metadata, agent memory, heartbeats)

Each payload is first classified into one tagged Payload variant by
``classify_payload`` and then mapped to units by a single total function, so
every shape is handled in one place and unrecognized shapes are dropped and
logged rather than misrendered.

Message content is either a plain string or an ordered list of typed blocks
(``text``, ``tool_use``, ``tool_result``). Role markers follow the remote
deployment's ``type`` field (``ai``/``human``/``tool``), with OpenAI-style
``role`` values accepted as aliases.
"""

import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from errors import ParseError
from stream.types import (
    DEFAULT_WORKER_NAME,
    Delegation,
    ErrorSignal,
    Finding,
    RawRecord,
    SemanticUnit,
    TextFragment,
)

logger = structlog.get_logger(__name__)

# Fields that suggest an unknown block carries file data
_FILE_HINT_FIELDS = (
    "url", "file", "filename", "data", "content_type", "mime_type",
    "download", "attachment", "artifact", "binary", "base64",
)


class PayloadKind(StrEnum):
    """Tagged variants of a parsed record payload."""

    ERROR = "error"
    WRAPPED_BATCH = "wrapped_batch"
    BARE_BATCH = "bare_batch"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class Payload:
    """A classified payload.

    Attributes:
        kind: Which upstream shape the payload had.
        messages: Message objects for the two batch shapes (empty otherwise).
        error: Error text for the ERROR variant.
    """

    kind: PayloadKind
    messages: list[Any] = field(default_factory=list)
    error: str | None = None


class MessageRole(StrEnum):
    """Normalized message author roles."""

    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"
    OTHER = "other"


_ROLE_ALIASES: dict[str, MessageRole] = {
    "ai": MessageRole.ASSISTANT,
    "assistant": MessageRole.ASSISTANT,
    "aimessage": MessageRole.ASSISTANT,
    "aimessagechunk": MessageRole.ASSISTANT,
    "human": MessageRole.USER,
    "user": MessageRole.USER,
    "humanmessage": MessageRole.USER,
    "tool": MessageRole.TOOL,
    "toolmessage": MessageRole.TOOL,
}


def parse_record(record: RawRecord) -> Any:
    """Decode a record's JSON payload.

    Raises:
        ParseError: If the payload is empty or not valid JSON.
    """
    if not record.data:
        raise ParseError("Empty data payload")
    try:
        return json.loads(record.data)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON payload: {e.msg}", raw=record.data[:200]) from e


def classify_payload(data: Any, event: str | None = None) -> Payload:
    """Map a decoded payload onto exactly one Payload variant."""
    if isinstance(data, dict):
        if data.get("error"):
            message = data.get("message") or data["error"]
            return Payload(kind=PayloadKind.ERROR, error=str(message))
        if event == "error":
            return Payload(kind=PayloadKind.ERROR, error=str(data.get("message") or data))
        messages = data.get("messages")
        if isinstance(messages, list):
            return Payload(kind=PayloadKind.WRAPPED_BATCH, messages=messages)
        return Payload(kind=PayloadKind.UNRECOGNIZED)

    if isinstance(data, list):
        return Payload(kind=PayloadKind.BARE_BATCH, messages=data)

    if event == "error" and isinstance(data, str):
        return Payload(kind=PayloadKind.ERROR, error=data)

    return Payload(kind=PayloadKind.UNRECOGNIZED)


def classify_role(message: dict[str, Any]) -> MessageRole:
    """Resolve a message's author role from its ``type`` or ``role`` marker."""
    marker = message.get("type") or message.get("role")
    if not isinstance(marker, str):
        return MessageRole.OTHER
    return _ROLE_ALIASES.get(marker.lower(), MessageRole.OTHER)


def worker_display_name(tool_name: str | None, tool_input: dict[str, Any]) -> str:
    """Derive a readable worker name for a sub-task invocation.

    The declared ``subagent_type`` wins over the raw tool name; separators are
    turned into spaces ("market-researcher" -> "market researcher").
    """
    raw = tool_input.get("subagent_type") or tool_name or DEFAULT_WORKER_NAME
    name = re.sub(r"[-_]", " ", str(raw)).strip()
    return name or DEFAULT_WORKER_NAME


def _instructions(tool_input: dict[str, Any]) -> str:
    for key in ("description", "instructions", "prompt", "task"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _as_input(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {"description": raw}
        if isinstance(decoded, dict):
            return decoded
    return {}


class EventNormalizer:
    """Turns records and snapshot message lists into SemanticUnits.

    The normalizer remembers the worker name of every Delegation it has
    produced so that later Findings can be labelled with the worker that
    produced them. That registry lives for the whole session.

    Attributes:
        parse_errors: Records dropped because their payload could not be decoded.
        dropped_messages: Messages dropped for an unknown role or missing identity.
    """

    def __init__(self) -> None:
        self._worker_names: dict[str, str] = {}
        self.parse_errors = 0
        self.dropped_messages = 0

    def normalize(self, record: RawRecord) -> list[SemanticUnit]:
        """Produce zero or more units from one stream record. Never raises."""
        try:
            data = parse_record(record)
        except ParseError as e:
            self.parse_errors += 1
            logger.warning(
                "record_parse_failed",
                error=str(e),
                event=record.event,
                raw=e.raw,
            )
            return []

        payload = classify_payload(data, record.event)
        return self.normalize_payload(payload)

    def normalize_payload(self, payload: Payload) -> list[SemanticUnit]:
        if payload.kind == PayloadKind.ERROR:
            logger.warning("payload_error_reported", error=payload.error)
            return [ErrorSignal(message=payload.error or "Unknown error")]

        if payload.kind == PayloadKind.UNRECOGNIZED:
            logger.debug("payload_unrecognized")
            return []

        return self.normalize_messages(payload.messages)

    def normalize_messages(
        self,
        messages: list[Any],
        *,
        snapshot: bool = False,
    ) -> list[SemanticUnit]:
        """Normalize a list of message objects.

        Args:
            messages: Message objects in stream or snapshot shape.
            snapshot: When True, tool-channel string content becomes a Finding
                (the snapshot is where sub-task outputs are collected) and
                worker names are pre-registered from the whole batch.
        """
        if snapshot:
            self._register_delegations(messages)

        units: list[SemanticUnit] = []
        for message in messages:
            try:
                units.extend(self._normalize_message(message, snapshot=snapshot))
            except Exception as e:
                self.dropped_messages += 1
                logger.warning(
                    "message_normalization_failed",
                    error=str(e),
                    message_id=message.get("id") if isinstance(message, dict) else None,
                )
        return units

    def resolve_worker_name(self, delegation_id: str | None) -> str:
        """Look up the worker behind a Delegation, defaulting on a miss."""
        if delegation_id and delegation_id in self._worker_names:
            return self._worker_names[delegation_id]
        logger.debug("finding_correlation_miss", delegation_id=delegation_id)
        return DEFAULT_WORKER_NAME

    # ------------------------------------------------------------------
    # Per-role mapping
    # ------------------------------------------------------------------

    def _normalize_message(self, message: Any, *, snapshot: bool) -> list[SemanticUnit]:
        if not isinstance(message, dict):
            self.dropped_messages += 1
            logger.debug("message_not_an_object", value_type=type(message).__name__)
            return []

        role = classify_role(message)
        if role == MessageRole.ASSISTANT:
            return self._normalize_assistant(message)
        if role == MessageRole.TOOL:
            return self._normalize_tool(message, snapshot=snapshot)
        if role == MessageRole.USER:
            # Already rendered by the caller
            return []

        self.dropped_messages += 1
        logger.debug(
            "message_role_unrecognized",
            marker=message.get("type") or message.get("role"),
            keys=sorted(message.keys())[:10],
        )
        return []

    def _normalize_assistant(self, message: dict[str, Any]) -> list[SemanticUnit]:
        message_id = message.get("id")
        if not isinstance(message_id, str) or not message_id:
            self.dropped_messages += 1
            logger.debug("assistant_message_without_id")
            return []

        content = message.get("content")
        # Streamed chunks carry only the newly generated suffix
        delta = str(message.get("type", "")).lower() == "aimessagechunk"
        units: list[SemanticUnit] = []

        if isinstance(content, str):
            if content:
                units.append(TextFragment(source_id=message_id, text=content, continuation=delta))
        elif isinstance(content, list):
            for index, block in enumerate(content):
                unit = self._normalize_assistant_block(message_id, index, block, delta)
                if unit is not None:
                    units.append(unit)

        # OpenAI-style tool calls carried beside the content
        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list):
            for index, call in enumerate(tool_calls):
                if not isinstance(call, dict):
                    continue
                call_id = call.get("id") or f"{message_id}:call:{index}"
                delegation = self._delegation(
                    str(call_id), call.get("name"), _as_input(call.get("args"))
                )
                if all(not (isinstance(u, Delegation) and u.id == delegation.id) for u in units):
                    units.append(delegation)

        return units

    def _normalize_assistant_block(
        self,
        message_id: str,
        index: int,
        block: Any,
        delta: bool = False,
    ) -> SemanticUnit | None:
        # The first text block shares the message identity so that string and
        # single-block deliveries of the same message collapse together.
        text_id = message_id if index == 0 else f"{message_id}:{index}"

        if isinstance(block, str):
            return TextFragment(source_id=text_id, text=block, continuation=delta) if block else None
        if not isinstance(block, dict):
            return None

        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                return TextFragment(source_id=text_id, text=text, continuation=delta)
            return None

        if block_type == "tool_use":
            block_id = block.get("id") or f"{message_id}:{index}"
            return self._delegation(str(block_id), block.get("name"), _as_input(block.get("input")))

        if block_type == "tool_result":
            return self._finding(block, fallback_id=f"{message_id}:{index}")

        file_hints = [name for name in _FILE_HINT_FIELDS if name in block]
        logger.debug(
            "content_block_skipped",
            message_id=message_id,
            block_type=block_type,
            file_hints=file_hints,
        )
        return None

    def _normalize_tool(self, message: dict[str, Any], *, snapshot: bool) -> list[SemanticUnit]:
        content = message.get("content")
        message_id = message.get("id")
        tool_call_id = message.get("tool_call_id")

        if isinstance(content, str):
            if not content.strip():
                return []
            identity = message_id or tool_call_id
            if not identity:
                self.dropped_messages += 1
                logger.debug("tool_message_without_id")
                return []
            if snapshot:
                correlates_to = str(tool_call_id or message_id)
                return [
                    Finding(
                        id=str(identity),
                        correlates_to=correlates_to,
                        payload=content,
                        worker_name=self.resolve_worker_name(correlates_to),
                    )
                ]
            # Sub-task prose findings stream as plain tool-channel text
            return [TextFragment(source_id=str(identity), text=content)]

        units: list[SemanticUnit] = []
        if isinstance(content, list):
            for index, block in enumerate(content):
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    fallback = f"{message_id or tool_call_id}:{index}"
                    finding = self._finding(block, fallback_id=fallback)
                    if finding is not None:
                        units.append(finding)
        return units

    # ------------------------------------------------------------------
    # Unit construction
    # ------------------------------------------------------------------

    def _delegation(
        self,
        delegation_id: str,
        tool_name: Any,
        tool_input: dict[str, Any],
    ) -> Delegation:
        name = tool_name if isinstance(tool_name, str) else ""
        worker_name = worker_display_name(name, tool_input)
        self._worker_names.setdefault(delegation_id, worker_name)
        return Delegation(
            id=delegation_id,
            worker_name=worker_name,
            instructions=_instructions(tool_input),
            tool_name=name,
            tool_input=tool_input,
        )

    def _finding(self, block: dict[str, Any], *, fallback_id: str) -> Finding | None:
        correlates_to = block.get("tool_use_id") or block.get("id")
        if not correlates_to:
            logger.debug("tool_result_without_correlation", fallback_id=fallback_id)
            return None
        correlates_to = str(correlates_to)
        return Finding(
            id=str(block.get("id") or correlates_to),
            correlates_to=correlates_to,
            payload=block.get("content"),
            worker_name=self.resolve_worker_name(correlates_to),
        )

    def _register_delegations(self, messages: list[Any]) -> None:
        for message in messages:
            if not isinstance(message, dict) or classify_role(message) != MessageRole.ASSISTANT:
                continue
            content = message.get("content")
            if isinstance(content, list):
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("id"):
                        worker = worker_display_name(block.get("name"), _as_input(block.get("input")))
                        self._worker_names.setdefault(str(block["id"]), worker)
            tool_calls = message.get("tool_calls")
            if isinstance(tool_calls, list):
                for call in tool_calls:
                    if isinstance(call, dict) and call.get("id"):
                        worker = worker_display_name(call.get("name"), _as_input(call.get("args")))
                        self._worker_names.setdefault(str(call["id"]), worker)
