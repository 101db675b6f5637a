"""Run event models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class EventKind(str, Enum):
    """Kinds of run events."""

    STDOUT = "stdout"
    STDERR = "stderr"
    DIAGNOSTIC = "diagnostic"
    LIFECYCLE = "lifecycle"


class Lifecycle:
    """Payloads of ``lifecycle`` events."""

    STARTED = "Started"
    TRUNCATED = "Truncated"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"
    MEMORY_LIMIT_EXCEEDED = "MemoryLimitExceeded"

    @staticmethod
    def exited(exit_code: int) -> str:
        return f"Exited({exit_code})"

    @staticmethod
    def internal_error(detail: str) -> str:
        return f"InternalError: {detail}"


class Event(BaseModel):
    """A single sequence-numbered event of a run.

    Events are immutable once published and are appended to the
    session's stream in merge order.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    seq: int
    kind: EventKind
    payload: str
    timestamp: datetime
