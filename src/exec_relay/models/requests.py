"""API request models."""

from pydantic import BaseModel, Field

from exec_relay.models.session import LimitsOverride


class SubmitRunRequest(BaseModel):
    """Request to run one source file in a workspace."""

    workspace_id: str = Field(min_length=1, max_length=256)
    language: str = Field(min_length=1, max_length=32)
    source: str
    limits: LimitsOverride | None = None
