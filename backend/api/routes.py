"""HTTP status routes for the droplet agent.

Operators and monitoring poll these endpoints; instance placement and the
heartbeat layer do not go through here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, HTTPException, status

from models.schemas import HealthResponse, RuntimeStatus, VarzResponse

if TYPE_CHECKING:
    from agent import DropletAgent

logger = structlog.get_logger(__name__)

router = APIRouter()

# Agent dependency (set during application startup)
_agent: DropletAgent | None = None


def set_agent(agent: DropletAgent) -> None:
    """Set the agent instance used by the routes.

    Args:
        agent: The agent instance to use.
    """
    global _agent
    _agent = agent


def get_agent() -> DropletAgent:
    """Get the configured agent.

    Raises:
        RuntimeError: If the agent has not been configured.
    """
    if _agent is None:
        raise RuntimeError("DropletAgent not configured")
    return _agent


@router.get(
    "/healthz",
    response_model=HealthResponse,
    summary="Liveness check",
)
async def healthz() -> HealthResponse:
    """Report that the agent process is up."""
    return HealthResponse(status="ok")


@router.get(
    "/varz",
    response_model=VarzResponse,
    summary="Agent gauges",
    description="Droplet filesystem usage, reaping counters and runtime status.",
)
async def varz() -> VarzResponse:
    """Expose the agent's gauges and runtime validation results.

    Returns:
        VarzResponse built from the current metrics snapshot.

    Raises:
        HTTPException: 503 if the agent has not finished starting.
    """
    try:
        agent = get_agent()
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e

    snapshot = agent.metrics.snapshot()
    runtimes = [
        RuntimeStatus(
            name=entry.name,
            enabled=entry.enabled,
            executable=entry.executable,
            expanded_executable=entry.expanded_executable,
        )
        for entry in sorted(agent.runtimes.entries(), key=lambda e: e.name)
    ]

    return VarzResponse(
        droplet_fs_percent_used=snapshot.droplet_fs_percent_used,
        droplet_fs_over_threshold=agent.droplet_fs_full(),
        tracked_instances=len(agent.droplets),
        crashed_instances_reaped=snapshot.crashed_instances_reaped,
        untracked_dirs_removed=snapshot.untracked_dirs_removed,
        chown_failures=snapshot.chown_failures,
        runtimes=runtimes,
    )
