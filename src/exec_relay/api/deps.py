"""API dependencies."""

from typing import Annotated

from fastapi import Depends, Path, Request

from exec_relay.core.session import Session, SessionRegistry


async def get_registry(request: Request) -> SessionRegistry:
    """Get the session registry from app state."""
    registry: SessionRegistry = request.app.state.registry
    return registry


async def get_session(
    session_id: Annotated[str, Path(description="Run session ID")],
    registry: Annotated[SessionRegistry, Depends(get_registry)],
) -> Session:
    """Get a session by ID."""
    return await registry.get(session_id)


RegistryDep = Annotated[SessionRegistry, Depends(get_registry)]
SessionDep = Annotated[Session, Depends(get_session)]
