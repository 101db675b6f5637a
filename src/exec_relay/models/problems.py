"""Problem models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Severity(str, Enum):
    """Problem severity."""

    ERROR = "error"
    WARNING = "warning"


class Problem(BaseModel):
    """A structured compiler or runtime problem."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    severity: Severity
    message: str
    file: str
    line: int
    column: int | None = None

    def render(self) -> str:
        """Render in the canonical ``file:line[:col]: severity: message`` form."""
        location = f"{self.file}:{self.line}"
        if self.column is not None:
            location = f"{location}:{self.column}"
        return f"{location}: {self.severity.value}: {self.message}"
