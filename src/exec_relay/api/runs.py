"""Run submission, snapshot and cancellation endpoints."""

from fastapi import APIRouter, Query, status

from exec_relay.api.deps import RegistryDep, SessionDep
from exec_relay.models.requests import SubmitRunRequest
from exec_relay.models.responses import (
    CancelResponse,
    ProblemsResponse,
    RunListResponse,
    RunResponse,
)

router = APIRouter(prefix="/runs", tags=["Runs"])


@router.post("", response_model=RunResponse, status_code=status.HTTP_201_CREATED)
async def submit_run(
    request: SubmitRunRequest,
    registry: RegistryDep,
) -> RunResponse:
    """Submit source code for execution in a workspace.

    Returns as soon as the process has started; follow the run through
    its events.
    """
    session = await registry.submit(
        workspace_id=request.workspace_id,
        language=request.language,
        source=request.source,
        limits=request.limits,
    )
    return RunResponse.from_info(session.to_info())


@router.get("", response_model=RunListResponse)
async def list_runs(
    registry: RegistryDep,
    workspace_id: str | None = Query(None, description="Only runs of this workspace"),
) -> RunListResponse:
    """List runs still held in memory."""
    sessions = await registry.list_sessions(workspace_id)
    return RunListResponse(
        runs=[RunResponse.from_info(s.to_info()) for s in sessions],
        total=len(sessions),
    )


@router.get("/{session_id}", response_model=RunResponse)
async def get_run(session: SessionDep) -> RunResponse:
    """Get a run snapshot."""
    return RunResponse.from_info(session.to_info())


@router.post("/{session_id}/cancel", response_model=CancelResponse)
async def cancel_run(session_id: str, registry: RegistryDep) -> CancelResponse:
    """Cancel a queued or running run."""
    session = await registry.cancel(session_id)
    return CancelResponse(ok=True, state=session.state.value)


@router.get("/{session_id}/problems", response_model=ProblemsResponse)
async def get_problems(session_id: str, registry: RegistryDep) -> ProblemsResponse:
    """Problems reported by a run, in the order they were found."""
    problems = await registry.problems(session_id)
    return ProblemsResponse(problems=problems, session_id=session_id)
