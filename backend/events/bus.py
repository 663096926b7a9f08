"""Async event bus carrying timeline events to the rendering layer.

Conversation sessions publish TimelineEvents here; WebSocket handlers (and
tests) subscribe per session. The bus supports:
- Multiple subscribers per session
- Buffering of events published before anyone subscribed
- Per-session history for replay after a reconnect
- A SESSION_CLOSED sentinel that ends subscriber loops
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, TimelineEvent

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub bus for timeline events, keyed by session id.

    Event Buffering:
        A turn starts emitting as soon as the HTTP request that created it
        returns, usually before the client has opened its WebSocket. Events
        published with no subscriber are buffered and handed to the first
        subscriber that connects.

    Thread Safety:
        The subscriber registry is guarded by a threading.Lock so that
        history and subscriber counts can be read from outside the event
        loop thread (the HTTP test client runs the app in a portal thread).
        Queue puts always happen on the publishing loop.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("sess_123")
        >>> await bus.publish(TimelineEvent(
        ...     type=EventType.TURN_STARTED,
        ...     session_id="sess_123",
        ...     turn=1,
        ...     data={"message": "Summarize Q3 demand"},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("sess_123", queue)
        >>> await bus.close_session("sess_123")
    """

    # Maximum number of events to retain per session for replay on reconnect.
    MAX_HISTORY_PER_SESSION = 5000

    # Seconds a stalled subscriber may block a single delivery
    DELIVERY_TIMEOUT = 5.0

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[TimelineEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[TimelineEvent]] = defaultdict(list)
        self._event_history: dict[str, list[TimelineEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, session_id: str) -> asyncio.Queue[TimelineEvent]:
        """Subscribe to a session's events.

        Buffered events (published before any subscriber connected) are
        delivered to the new queue immediately.

        Args:
            session_id: The session to subscribe to

        Returns:
            A queue receiving TimelineEvent objects in publish order
        """
        queue: asyncio.Queue[TimelineEvent] = asyncio.Queue()
        buffered_events: list[TimelineEvent] = []

        with self._lock:
            self._subscribers[session_id].append(queue)
            subscriber_count = len(self._subscribers[session_id])
            buffered_events = self._event_buffer.pop(session_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[TimelineEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored with a warning."""
        with self._lock:
            queues = self._subscribers.get(session_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", session_id=session_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[session_id]
            subscriber_count = len(queues)

        logger.info(
            "subscriber_removed",
            session_id=session_id,
            subscriber_count=subscriber_count,
        )

    async def publish(self, event: TimelineEvent) -> None:
        """Deliver an event to every subscriber of its session.

        The event is recorded in the session history. With no subscribers it
        is buffered instead.
        """
        with self._lock:
            if event.type != EventType.SESSION_CLOSED:
                history = self._event_history[event.session_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_SESSION:
                    self._event_history[event.session_id] = history[-self.MAX_HISTORY_PER_SESSION:]

            subscribers = list(self._subscribers.get(event.session_id, []))

            if not subscribers:
                self._event_buffer[event.session_id].append(event)
                logger.debug(
                    "event_buffered",
                    session_id=event.session_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[event.session_id]),
                )
                return

        # A frozen WebSocket client must not stall the session
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=self.DELIVERY_TIMEOUT)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    session_id=event.session_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            session_id=event.session_id,
            event_type=event.type.value,
            turn=event.turn,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, session_id: str) -> list[TimelineEvent]:
        """All stored events of a session, oldest first, for replay."""
        with self._lock:
            return list(self._event_history.get(session_id, []))

    async def close_session(self, session_id: str) -> None:
        """Close a session and release its subscribers.

        Each subscriber queue receives a SESSION_CLOSED sentinel so that read
        loops can exit. Subscribers and buffered events are dropped; history
        is kept for a later reconnect.
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(session_id, [])
            buffered = self._event_buffer.pop(session_id, [])

        for queue in queues_to_signal:
            queue.put_nowait(
                TimelineEvent(
                    type=EventType.SESSION_CLOSED,
                    session_id=session_id,
                    data={"reason": "session_closed"},
                )
            )

        if queues_to_signal or buffered:
            logger.info(
                "session_closed",
                session_id=session_id,
                subscribers_removed=len(queues_to_signal),
                buffered_events_cleared=len(buffered),
            )
        else:
            logger.debug("close_session_not_found", session_id=session_id)

    def get_subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def get_active_sessions(self) -> list[str]:
        """Sessions with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())

    def clear_event_history(self, session_id: str) -> None:
        with self._lock:
            self._event_history.pop(session_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global EventBus instance (used between tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
