"""Session models."""

from datetime import datetime

from pydantic import BaseModel, Field


class ResourceLimits(BaseModel):
    """Limits enforced by the sandbox for one run."""

    wall_timeout_seconds: float = Field(gt=0)
    memory_bytes: int = Field(ge=1024 * 1024)
    output_bytes: int = Field(ge=1)


class LimitsOverride(BaseModel):
    """Caller-supplied limits; missing fields fall back to configured defaults."""

    wall_timeout_seconds: float | None = Field(default=None, gt=0)
    memory_bytes: int | None = Field(default=None, ge=1024 * 1024)
    output_bytes: int | None = Field(default=None, ge=1)


class SessionInfo(BaseModel):
    """Session information for API responses."""

    id: str
    workspace_id: str
    language: str
    state: str
    limits: ResourceLimits
    created_at: datetime
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_code: int | None = None
    duration_ms: int | None = None
    failure_reason: str | None = None
    internal_error: bool = False
    truncated: bool = False
    last_seq: int = 0
