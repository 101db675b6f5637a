"""Server endpoints - health and info."""

import sys

from fastapi import APIRouter

from exec_relay import __version__
from exec_relay.adapters import create_adapter, get_supported_languages
from exec_relay.api.deps import RegistryDep
from exec_relay.config import settings
from exec_relay.models.responses import HealthResponse, InfoResponse

router = APIRouter(tags=["Server"])


@router.get("/health", response_model=HealthResponse)
async def health_check(registry: RegistryDep) -> HealthResponse:
    """Check server health status."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        active_runs=registry.active_count,
    )


@router.get("/info", response_model=InfoResponse)
async def server_info(registry: RegistryDep) -> InfoResponse:
    """Get server information, including which toolchains are installed."""
    return InfoResponse(
        name="Exec Relay",
        version=__version__,
        python_version=sys.version.split()[0],
        languages={
            language: create_adapter(language).is_available()
            for language in get_supported_languages()
        },
        isolation=registry.runner.isolation.describe(),
        active_runs=registry.active_count,
        history_per_workspace=settings.history_per_workspace,
    )
