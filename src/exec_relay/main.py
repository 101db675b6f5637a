"""Main application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from exec_relay import __version__
from exec_relay.api.errors import register_error_handlers
from exec_relay.api.router import api_router
from exec_relay.config import settings
from exec_relay.core.session import SessionRegistry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup
    logger.info(f"Starting Exec Relay v{__version__}")
    logger.info(f"Isolation: {settings.isolation}, network: {settings.allow_network}")
    logger.info(f"Data directory: {settings.data_dir}")

    registry = SessionRegistry()
    await registry.start()
    app.state.registry = registry

    yield

    # Shutdown
    logger.info("Shutting down...")
    await registry.stop()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Exec Relay",
        description="Sandboxed code execution with live event streaming",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # Register routers
    app.include_router(api_router)

    # Register error handlers
    register_error_handlers(app)

    return app


# Create app instance
app = create_app()


def main() -> None:
    """Run the server."""
    uvicorn.run(
        "exec_relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
