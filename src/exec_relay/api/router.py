"""Main API router aggregator."""

from fastapi import APIRouter

from exec_relay.api import events, runs, server, workspaces

# Create main router with API version prefix
api_router = APIRouter(prefix="/api/v1")

# Include all sub-routers
api_router.include_router(server.router)
api_router.include_router(runs.router)
api_router.include_router(events.router)
api_router.include_router(workspaces.router)
