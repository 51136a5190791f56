"""FastAPI application entry point for the droplet agent.

Builds the agent, runs its startup checks and serves the status routes while
the reaper and disk usage loops run in the background.

Usage:
    uv run uvicorn main:app
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from agent import DropletAgent
from api.routes import router, set_agent
from config import configure_logging, settings

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        status_port=settings.status_port,
        droplets_dir=settings.droplets_dir,
        log_level=settings.log_level,
    )

    agent = DropletAgent(settings)
    await agent.start()

    set_agent(agent)
    app.state.agent = agent

    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await app.state.agent.shutdown()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Droplet Agent",
    description="Status API of the per-host droplet agent.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url=None,
    openapi_url="/openapi.json",
)

app.include_router(router, tags=["status"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.status_port,
        log_level=settings.log_level.lower(),
    )
