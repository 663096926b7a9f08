"""WebSocket handler for real-time timeline events.

This module handles WebSocket connections that stream a session's timeline
events to the client and receive commands (abort, ping) from it.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, TimelineEvent, get_event_bus

if TYPE_CHECKING:
    from session_manager import SessionManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_session_manager: "SessionManager | None" = None


def set_session_manager(manager: "SessionManager") -> None:
    """Set the session manager used by WebSocket command handlers."""
    global _session_manager
    _session_manager = manager
    logger.info("websocket_session_manager_configured")


def get_session_manager() -> "SessionManager":
    """Return configured session manager for WebSocket command handlers."""
    if _session_manager is None:
        raise RuntimeError(
            "SessionManager not configured for WebSocket handlers. "
            "Call set_session_manager() during startup."
        )
    return _session_manager


@websocket_router.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str) -> None:
    """Bidirectional channel for one session.

    - Server -> Client: TimelineEvents (history replay first, then live)
    - Client -> Server: ``{"type": "abort"}`` and ``{"type": "ping"}``
    """
    await websocket.accept()
    logger.info("websocket_connected", session_id=session_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so no event falls between the two
    queue = event_bus.subscribe(session_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(session_id)
        if history:
            logger.info(
                "replaying_event_history",
                session_id=session_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", session_id=session_id)
                    return

        async def send_events() -> None:
            """Forward live events, skipping ones already sent from history."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.SESSION_CLOSED:
                        logger.info("session_closed_sentinel", session_id=session_id)
                        break

                    # Buffered events can also appear in the replayed history
                    if event.timestamp <= last_replay_timestamp:
                        continue

                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", session_id=session_id)

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", session_id=session_id)
                        continue
                    command_type = data.get("type")

                    logger.info(
                        "command_received",
                        session_id=session_id,
                        command_type=command_type,
                    )

                    if command_type == "abort":
                        await handle_abort_command(session_id)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            session_id=session_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", session_id=session_id)

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Usually ends on disconnect or session close
        _, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session_id)
    finally:
        event_bus.unsubscribe(session_id, queue)
        logger.info("websocket_cleanup_complete", session_id=session_id)


async def handle_abort_command(session_id: str) -> None:
    """Abort the session's live stream; report unknown sessions as a notice."""
    session_manager = get_session_manager()

    try:
        aborted = session_manager.abort_stream(session_id)
    except KeyError:
        logger.warning("abort_command_session_not_found", session_id=session_id)
        await get_event_bus().publish(
            TimelineEvent(
                type=EventType.NOTICE,
                session_id=session_id,
                data={
                    "level": "error",
                    "message": f"Session {session_id} not found",
                },
            )
        )
        return

    logger.info("abort_command_processed", session_id=session_id, aborted=aborted)
