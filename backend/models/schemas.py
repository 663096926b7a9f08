"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API and WebSocket handlers.
All models use Pydantic v2 with strict type validation.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

from stream.types import ArtifactSource, EntryKind, TurnOutcome


class SendMessageRequest(BaseModel):
    """Request body for creating a session or starting a new turn."""

    message: str = Field(
        min_length=1,
        max_length=20000,
        description="The user message for the remote agent",
        examples=["Research Q3 demand for EV chargers and save a summary report."],
    )


class SessionResponse(BaseModel):
    """Response for session creation and new turns."""

    session_id: str = Field(
        description="Unique session identifier",
        examples=["sess_abc123def456"],
    )
    websocket_url: str = Field(
        description="WebSocket URL for real-time timeline events",
        examples=["/ws/sess_abc123def456"],
    )
    turn: int = Field(
        description="Number of the turn that was started",
        examples=[1],
    )


class TimelineEntryResponse(BaseModel):
    """One entry of a session timeline."""

    entry_id: str = Field(description="Stable entry identifier")
    kind: EntryKind = Field(description="Entry kind")
    turn: int = Field(description="Turn the entry belongs to")
    text: str = Field(default="", description="Prose, instructions or rendered result")
    worker_name: str | None = Field(
        default=None,
        description="Worker name for delegation and finding entries",
    )
    correlates_to: str | None = Field(
        default=None,
        description="Delegation id a finding answers",
    )
    closed: bool = Field(default=False, description="Whether the entry can still grow")


class ArtifactInfo(BaseModel):
    """Metadata of a generated file."""

    path: str = Field(
        description="Path as reported upstream",
        examples=["/reports/q3_demand.md"],
    )
    file_name: str = Field(
        description="Unique file name within the session",
        examples=["q3_demand.md"],
    )
    size: int = Field(ge=0, description="Content length in characters")
    source: ArtifactSource = Field(description="Where the artifact was discovered")


class SessionDetailResponse(BaseModel):
    """Detailed session state: timeline, artifacts and turn state."""

    session_id: str = Field(description="Unique session identifier")
    thread_id: str | None = Field(default=None, description="Remote thread identity")
    turn: int = Field(description="Current turn number")
    streaming: bool = Field(description="Whether a live stream is open")
    polling: bool = Field(description="Whether a status poller is running")
    outcomes: dict[str, TurnOutcome] = Field(
        default_factory=dict,
        description="Final outcome per finished turn",
    )
    timeline: list[TimelineEntryResponse] = Field(default_factory=list)
    artifacts: list[ArtifactInfo] = Field(default_factory=list)
    created_at: float = Field(description="Unix timestamp of session creation")

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> "SessionDetailResponse":
        return cls.model_validate(state)


class AbortResponse(BaseModel):
    """Result of an abort request."""

    session_id: str
    aborted: bool = Field(description="False when no stream was live")


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_sessions: int = Field(
        default=0,
        description="Number of sessions in the registry",
    )
