"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Tidewatch
backend. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        agent_service_url: Base URL of the remote agent deployment.
        agent_assistant_id: Assistant/graph identifier submitted with each run.
        agent_service_api_key: Opaque key forwarded as ``X-Api-Key`` when set.
        stream_mode: Stream modes requested from the remote run stream.
        stream_timeout_seconds: Read timeout for the live event stream.
        request_timeout_seconds: Timeout for status and snapshot requests.
        poll_max_attempts: Hard ceiling on status poll attempts per turn.
        poll_base_interval_seconds: Base wait before a poll attempt.
        poll_interval_step_seconds: Linear growth of the wait per attempt.
        poll_max_interval_seconds: Cap on the wait between attempts.
        poll_max_consecutive_failures: Transport failures that trip the breaker.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Remote agent service
    agent_service_url: str = "http://localhost:2024"
    agent_assistant_id: str = "agent"
    agent_service_api_key: str = ""
    stream_mode: list[str] = ["values"]

    # Multi-file runs can take 20+ minutes upstream
    stream_timeout_seconds: float = 3600.0
    request_timeout_seconds: float = 30.0

    # Authoritative status polling
    poll_max_attempts: int = 50
    poll_base_interval_seconds: float = 5.0
    poll_interval_step_seconds: float = 5.0
    poll_max_interval_seconds: float = 30.0
    poll_max_consecutive_failures: int = 3

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    @field_validator("agent_service_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be joined with a leading slash."""
        return v.rstrip("/")

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
