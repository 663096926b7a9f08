"""HTTP API routes for the Tidewatch backend.

This module defines the HTTP endpoints for conversation sessions, artifact
access and health checks. Timeline events stream over the WebSocket in
websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, status
from fastapi.responses import PlainTextResponse

from errors import TurnInProgressError
from models.schemas import (
    AbortResponse,
    HealthResponse,
    SendMessageRequest,
    SessionDetailResponse,
    SessionResponse,
)

if TYPE_CHECKING:
    from session_manager import SessionManager
    from stream.session import ConversationSession

logger = structlog.get_logger(__name__)

router = APIRouter()


# Session manager dependency (set during application startup)
_session_manager: SessionManager | None = None


def set_session_manager(manager: SessionManager) -> None:
    """Set the session manager instance for the routes.

    This should be called during application startup to inject the session
    manager dependency.

    Args:
        manager: The SessionManager instance to use for all routes.
    """
    global _session_manager
    _session_manager = manager
    logger.info("session_manager_configured")


def get_session_manager() -> SessionManager:
    """Get the session manager instance.

    Raises:
        RuntimeError: If the session manager has not been configured.
    """
    if _session_manager is None:
        logger.error("session_manager_not_configured")
        raise RuntimeError(
            "SessionManager not configured. Call set_session_manager() during startup."
        )
    return _session_manager


def _require_session(session_id: str) -> ConversationSession:
    session = get_session_manager().get_session(session_id)
    if session is None:
        logger.warning("session_not_found", session_id=session_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return session


@router.post(
    "/api/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new session",
    description="Create a conversation session and start its first turn.",
)
async def create_session(request: SendMessageRequest) -> SessionResponse:
    """Create a new session and start streaming its first turn.

    Returns:
        SessionResponse with session_id, websocket_url and the turn number.

    Raises:
        HTTPException: If session creation fails.
    """
    session_manager = get_session_manager()

    try:
        session_id = await session_manager.create_session(request.message)
    except Exception as e:
        logger.error("session_creation_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create session",
        ) from e

    logger.info(
        "session_created",
        session_id=session_id,
        message_length=len(request.message),
    )
    return SessionResponse(
        session_id=session_id,
        websocket_url=f"/ws/{session_id}",
        turn=1,
    )


@router.post(
    "/api/sessions/{session_id}/messages",
    response_model=SessionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send a follow-up message",
    description="Start a new turn on an existing session.",
)
async def send_message(
    session_id: Annotated[str, Path(description="The session ID")],
    request: SendMessageRequest,
) -> SessionResponse:
    """Start a new turn on the same session and remote thread.

    Raises:
        HTTPException: 404 for unknown sessions, 409 while a turn is streaming.
    """
    session_manager = get_session_manager()

    try:
        turn = await session_manager.send_message(session_id, request.message)
    except KeyError:
        logger.warning("send_message_session_not_found", session_id=session_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        ) from None
    except TurnInProgressError as e:
        logger.warning("send_message_turn_in_progress", session_id=session_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e

    logger.info("message_sent", session_id=session_id, turn=turn)
    return SessionResponse(
        session_id=session_id,
        websocket_url=f"/ws/{session_id}",
        turn=turn,
    )


@router.get(
    "/api/sessions/{session_id}",
    response_model=SessionDetailResponse,
    summary="Get session state",
    description="Timeline, artifacts and turn state of a session.",
)
async def get_session(
    session_id: Annotated[str, Path(description="The session ID")],
) -> SessionDetailResponse:
    session = _require_session(session_id)
    return SessionDetailResponse.from_state(session.to_dict())


@router.get(
    "/api/sessions/{session_id}/artifacts/{file_name}",
    response_class=PlainTextResponse,
    summary="Get artifact content",
    description="Content of a generated file as plain text.",
)
async def get_artifact(
    session_id: Annotated[str, Path(description="The session ID")],
    file_name: Annotated[str, Path(description="Artifact file name")],
) -> PlainTextResponse:
    """Return an artifact's content.

    Placeholder content is returned for files that were only referenced in
    prose.

    Raises:
        HTTPException: If the session or the artifact is not found.
    """
    session = _require_session(session_id)
    artifact = session.artifacts.get(file_name)
    if artifact is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Artifact {file_name} not found",
        )
    return PlainTextResponse(artifact.content)


@router.post(
    "/api/sessions/{session_id}/abort",
    response_model=AbortResponse,
    summary="Abort the live stream",
    description=(
        "Stop reading the current turn's stream. A running status poller "
        "is not cancelled."
    ),
)
async def abort_stream(
    session_id: Annotated[str, Path(description="The session ID")],
) -> AbortResponse:
    session_manager = get_session_manager()
    try:
        aborted = session_manager.abort_stream(session_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        ) from None

    logger.info("stream_abort_requested", session_id=session_id, aborted=aborted)
    return AbortResponse(session_id=session_id, aborted=aborted)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check() -> HealthResponse:
    """Health status, timestamp and the number of registered sessions."""
    active_sessions = 0
    if _session_manager is not None:
        active_sessions = len(_session_manager.list_sessions())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_sessions=active_sessions,
    )
