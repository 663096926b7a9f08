"""FastAPI application entry point for the Tidewatch backend.

This module initializes the FastAPI application with middleware, routers and
the shared remote agent service client.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_session_manager as set_routes_session_manager
from api.websocket import (
    set_session_manager as set_websocket_session_manager,
)
from api.websocket import (
    websocket_router,
)
from config import configure_logging, settings
from events import get_event_bus
from metrics import MetricsCollector
from remote import AgentServiceClient
from session_manager import SessionManager

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the shared client and session manager; tear both down on shutdown."""
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        agent_service_url=settings.agent_service_url,
    )

    client = AgentServiceClient.from_settings(settings)
    session_manager = SessionManager(
        client,
        get_event_bus(),
        settings=settings,
        metrics_collector=MetricsCollector(),
    )

    set_routes_session_manager(session_manager)
    set_websocket_session_manager(session_manager)

    app.state.session_manager = session_manager
    app.state.agent_client = client

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await session_manager.cleanup_all()
    await client.aclose()
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Tidewatch",
    description="Reconciles long-running remote multi-agent streams into a "
    "deduplicated timeline and decides when a remote turn is really finished.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["sessions"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "Tidewatch API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
