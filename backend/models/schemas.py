"""Pydantic schemas and shared enums.

This module defines the instance state enum used across the agent and the
response models served by the status HTTP API.
"""

from enum import StrEnum

from pydantic import BaseModel, Field


class InstanceState(StrEnum):
    """Instance lifecycle state.

    CRASHED and DELETED are terminal as far as directory management goes.
    """

    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    CRASHED = "CRASHED"
    DELETED = "DELETED"


class HealthResponse(BaseModel):
    """Response for the liveness endpoint."""

    status: str = Field(
        description="Liveness status",
        examples=["ok"],
    )


class RuntimeStatus(BaseModel):
    """Validation outcome of one configured runtime."""

    name: str = Field(description="Runtime name", examples=["ruby18"])
    enabled: bool = Field(description="Whether the runtime passed validation")
    executable: str = Field(description="Configured executable", examples=["ruby"])
    expanded_executable: str | None = Field(
        default=None,
        description="Resolved absolute path of the executable",
        examples=["/usr/bin/ruby"],
    )


class VarzResponse(BaseModel):
    """Agent gauges and counters exposed to operators."""

    droplet_fs_percent_used: int | None = Field(
        default=None,
        ge=0,
        le=100,
        description="Percent of the droplet filesystem in use, if measured",
    )
    droplet_fs_over_threshold: bool = Field(
        default=False,
        description="True when new instances should be refused for lack of disk",
    )
    tracked_instances: int = Field(
        default=0, ge=0, description="Instances in the droplet state map"
    )
    crashed_instances_reaped: int = Field(default=0, ge=0)
    untracked_dirs_removed: int = Field(default=0, ge=0)
    chown_failures: int = Field(default=0, ge=0)
    runtimes: list[RuntimeStatus] = Field(default_factory=list)
