"""Workspace-level endpoints."""

from fastapi import APIRouter

from exec_relay.api.deps import RegistryDep
from exec_relay.models.responses import (
    ArchivedRunSummary,
    HistoryResponse,
    ProblemsResponse,
    RunResponse,
)

router = APIRouter(prefix="/workspaces/{workspace_id}", tags=["Workspaces"])


@router.get("/problems", response_model=ProblemsResponse)
async def get_workspace_problems(workspace_id: str, registry: RegistryDep) -> ProblemsResponse:
    """Current problems of a workspace, taken from its most recent run."""
    problems = await registry.workspace_problems(workspace_id)
    session_id = registry.latest_session_id(workspace_id)
    return ProblemsResponse(problems=problems, session_id=session_id)


@router.get("/history", response_model=HistoryResponse)
async def get_workspace_history(workspace_id: str, registry: RegistryDep) -> HistoryResponse:
    """Archived runs of a workspace, oldest first."""
    runs = await registry.history(workspace_id)
    return HistoryResponse(
        runs=[
            ArchivedRunSummary(
                run=RunResponse.from_info(run.session),
                event_count=len(run.events),
                problem_count=len(run.problems),
                archived_at=run.archived_at,
            )
            for run in runs
        ],
        total=len(runs),
    )
