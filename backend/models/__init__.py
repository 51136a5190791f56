"""Models module for shared enums and Pydantic schemas."""

from models.schemas import (
    HealthResponse,
    InstanceState,
    RuntimeStatus,
    VarzResponse,
)

__all__ = [
    "HealthResponse",
    "InstanceState",
    "RuntimeStatus",
    "VarzResponse",
]
