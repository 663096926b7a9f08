"""Event channel between conversation sessions and the rendering layer.

Key Components:
    - EventType: Enum of all timeline event types
    - TimelineEvent: Pydantic model for events flowing through the channel
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventType, TimelineEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("sess_123")
    >>> await bus.publish(TimelineEvent(
    ...     type=EventType.NOTICE,
    ...     session_id="sess_123",
    ...     data={"level": "warning", "message": "Still waiting on the remote run"},
    ... ))
    >>> event = await queue.get()

Event Flow:
    1. A ConversationSession applies a record or poll result
    2. Each timeline/artifact mutation is published on the EventBus
    3. The WebSocket handler forwards events to the client
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    TimelineEvent,
)

__all__ = [
    # Event types
    "EventType",
    "TimelineEvent",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
