"""Event type definitions for the timeline event channel.

This module defines the events that flow from a conversation session to the
rendering layer. Every timeline mutation, artifact discovery and turn
boundary produces an event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types emitted by a conversation session.

    Events are categorized by:
    - Turn lifecycle: Start and the single final outcome of each turn
    - Timeline: Entry additions and in-place updates
    - Artifacts: Newly discovered generated files
    - Diagnostics: Notices and poller progress
    """

    # Turn lifecycle
    TURN_STARTED = "turn_started"
    TURN_FINISHED = "turn_finished"
    SESSION_CLOSED = "session_closed"

    # Timeline
    TIMELINE_ENTRY_ADDED = "timeline_entry_added"
    TIMELINE_ENTRY_UPDATED = "timeline_entry_updated"

    # Artifacts
    ARTIFACT_ADDED = "artifact_added"

    # Diagnostics
    NOTICE = "notice"
    POLL_PROGRESS = "poll_progress"


class TimelineEvent(BaseModel):
    """An event emitted by a conversation session.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - session_id: Which session this event belongs to
    - turn: The turn the event belongs to (0 before the first turn)
    - data: Event-specific payload

    Payload schemas by event type:

    TURN_STARTED:
        - message: str - The user message that started the turn

    TIMELINE_ENTRY_ADDED / TIMELINE_ENTRY_UPDATED:
        - entry: dict - The serialized TimelineEntry

    ARTIFACT_ADDED:
        - artifact: dict - path, file_name, size, source

    NOTICE:
        - level: str - "warning" or "error"
        - message: str - Explanatory text appended to the timeline view

    POLL_PROGRESS:
        - attempt: int - Attempt number, starting at 1
        - status: str - Run status observed on this attempt

    TURN_FINISHED:
        - outcome: str - completed, completed-with-timeout, error or cancelled
        - reasons: list - Pending-work signals that fired at stream end
        - poll: Optional[dict] - Poll summary when the poller ran
        - metrics: dict - Per-turn stream metrics
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    turn: int = 0
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "timeline_entry_added",
                    "timestamp": 1699876543.123,
                    "session_id": "sess_abc123",
                    "turn": 1,
                    "data": {
                        "entry": {
                            "entry_id": "delegation_toolu_01",
                            "kind": "delegation",
                            "turn": 1,
                            "text": "Research Q3 demand",
                            "worker_name": "market researcher",
                            "correlates_to": None,
                            "closed": True,
                        }
                    },
                }
            ]
        }
    }
