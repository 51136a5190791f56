"""API module for the agent's status HTTP routes."""

from api.routes import router

__all__ = ["router"]
