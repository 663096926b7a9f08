"""Session manager for conversation sessions against the remote agent service.

This module provides the SessionManager class that keeps the registry of
ConversationSessions, schedules their turns as background tasks and tears
everything down on shutdown.

Usage:
    >>> from events import get_event_bus
    >>> from remote import AgentServiceClient
    >>> from session_manager import SessionManager
    >>>
    >>> client = AgentServiceClient.from_settings(settings)
    >>> manager = SessionManager(client, get_event_bus())
    >>>
    >>> session_id = await manager.create_session("Research Q3 demand for EV chargers")
    >>> await manager.send_message(session_id, "Now compare with Q2")
    >>>
    >>> await manager.cleanup_all()
"""

import asyncio
import contextlib
import uuid

import structlog

from config import Settings
from config import settings as default_settings
from errors import TurnInProgressError
from events import EventBus
from metrics import MetricsCollector
from remote.client import AgentServiceClient
from stream.poller import SleepFunc
from stream.session import ConversationSession

logger = structlog.get_logger(__name__)


class SessionManager:
    """Registry and task scheduler for conversation sessions.

    Each session runs at most one turn task at a time. Poll tasks belong to
    the sessions themselves and may outlive the turn task that started them.

    Attributes:
        client: Client for the remote agent service, shared by all sessions.
        event_bus: Event bus for timeline events.
    """

    def __init__(
        self,
        client: AgentServiceClient,
        event_bus: EventBus,
        settings: Settings | None = None,
        metrics_collector: MetricsCollector | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.client = client
        self.event_bus = event_bus
        self.settings = settings or default_settings
        self.metrics_collector = metrics_collector or MetricsCollector()
        self._sleep = sleep
        self._sessions: dict[str, ConversationSession] = {}
        self._turn_tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        logger.info("session_manager_initialized")

    def _generate_session_id(self) -> str:
        """Session IDs look like "sess_{12 hex chars}"."""
        return f"sess_{uuid.uuid4().hex[:12]}"

    async def create_session(self, message: str) -> str:
        """Create a session and start its first turn in the background.

        Args:
            message: The user's first message.

        Returns:
            The new session ID.
        """
        session_id = self._generate_session_id()
        session = ConversationSession(
            session_id,
            self.client,
            self.event_bus,
            self.settings,
            metrics=self.metrics_collector,
            sleep=self._sleep,
        )

        async with self._lock:
            self._sessions[session_id] = session

        logger.info("create_session", session_id=session_id, message_length=len(message))
        await self._schedule_turn(session, message)
        return session_id

    async def send_message(self, session_id: str, message: str) -> int:
        """Start a new turn on an existing session.

        Returns:
            The number the new turn will get.

        Raises:
            KeyError: If the session doesn't exist.
            TurnInProgressError: If the session's current turn is still streaming.
        """
        session = self._require(session_id)
        await self._schedule_turn(session, message)
        return session.turn + 1

    def get_session(self, session_id: str) -> ConversationSession | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[ConversationSession]:
        return list(self._sessions.values())

    def is_turn_running(self, session_id: str) -> bool:
        task = self._turn_tasks.get(session_id)
        return task is not None and not task.done()

    def abort_stream(self, session_id: str) -> bool:
        """Abort the live stream of a session's current turn.

        Raises:
            KeyError: If the session doesn't exist.
        """
        session = self._require(session_id)
        aborted = session.abort_stream()
        logger.info("abort_stream", session_id=session_id, aborted=aborted)
        return aborted

    async def close_session(self, session_id: str) -> None:
        """Abort, cancel pollers and drop a session.

        Raises:
            KeyError: If the session doesn't exist.
        """
        session = self._require(session_id)

        async with self._lock:
            task = self._turn_tasks.pop(session_id, None)
            self._sessions.pop(session_id, None)

        session.abort_stream()
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await session.close()
        self.event_bus.clear_event_history(session_id)
        logger.info("close_session_complete", session_id=session_id)

    async def cleanup_all(self) -> None:
        """Cancel all turn and poll tasks and close every session.

        Called during application shutdown.
        """
        logger.info("cleanup_all_start", session_count=len(self._sessions))

        async with self._lock:
            sessions = list(self._sessions.values())
            tasks = list(self._turn_tasks.items())
            self._turn_tasks.clear()
            self._sessions.clear()

        for session in sessions:
            session.abort_stream()

        for session_id, task in tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("cleanup_task_cancel_failed", session_id=session_id, error=str(e))

        for session in sessions:
            await session.close()
            self.event_bus.clear_event_history(session.session_id)

        logger.info("cleanup_all_complete")

    def _require(self, session_id: str) -> ConversationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Session '{session_id}' not found")
        return session

    async def _schedule_turn(self, session: ConversationSession, message: str) -> None:
        session_id = session.session_id
        async with self._lock:
            if self.is_turn_running(session_id) or session.streaming:
                raise TurnInProgressError(f"Session '{session_id}' already has a turn in progress")

            task = asyncio.create_task(
                self._run_turn(session, message),
                name=f"turn_{session_id}",
            )
            self._turn_tasks[session_id] = task

            def _remove_task(t: asyncio.Task[None], sid: str = session_id) -> None:
                if self._turn_tasks.get(sid) is t:
                    self._turn_tasks.pop(sid, None)

            task.add_done_callback(_remove_task)

    async def _run_turn(self, session: ConversationSession, message: str) -> None:
        try:
            summary = await session.run_turn(message)
        except asyncio.CancelledError:
            logger.info("turn_task_cancelled", session_id=session.session_id)
            raise
        except Exception as e:
            logger.error(
                "turn_task_failed",
                session_id=session.session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        logger.debug(
            "turn_task_complete",
            session_id=session.session_id,
            turn=summary.turn,
            polling=summary.polling,
        )
