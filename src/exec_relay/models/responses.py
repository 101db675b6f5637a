"""API response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from exec_relay.models.events import Event
from exec_relay.models.problems import Problem
from exec_relay.models.session import ResourceLimits, SessionInfo


# Run responses


class RunResponse(BaseModel):
    """Run session snapshot."""

    session_id: str
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

    @classmethod
    def from_info(cls, info: SessionInfo) -> "RunResponse":
        return cls(session_id=info.id, **info.model_dump(exclude={"id"}))


class RunListResponse(BaseModel):
    """List of run sessions."""

    runs: list[RunResponse]
    total: int


class CancelResponse(BaseModel):
    """Result of a cancel request."""

    ok: bool
    state: str


# Event responses


class EventsResponse(BaseModel):
    """Events with seq above the requested cursor."""

    events: list[Event]
    last_seq: int
    closed: bool


# Problem responses


class ProblemsResponse(BaseModel):
    """Ordered problems of a run or workspace."""

    problems: list[Problem]
    session_id: str | None = None


class ArchivedRunSummary(BaseModel):
    """An archived run without its event log."""

    run: RunResponse
    event_count: int
    problem_count: int
    archived_at: datetime


class HistoryResponse(BaseModel):
    """Archived runs of a workspace, oldest first."""

    runs: list[ArchivedRunSummary]
    total: int


# Server responses


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    active_runs: int


class InfoResponse(BaseModel):
    """Server info response."""

    name: str
    version: str
    python_version: str
    languages: dict[str, bool]
    isolation: dict[str, Any]
    active_runs: int
    history_per_workspace: int
