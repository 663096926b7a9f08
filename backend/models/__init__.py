"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

from models.schemas import (
    AbortResponse,
    ArtifactInfo,
    HealthResponse,
    SendMessageRequest,
    SessionDetailResponse,
    SessionResponse,
    TimelineEntryResponse,
)

__all__ = [
    "AbortResponse",
    "ArtifactInfo",
    "HealthResponse",
    "SendMessageRequest",
    "SessionDetailResponse",
    "SessionResponse",
    "TimelineEntryResponse",
]
