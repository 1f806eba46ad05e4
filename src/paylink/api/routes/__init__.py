"""API routes."""

from paylink.api.routes.health import router as health_router
from paylink.api.routes.history import router as history_router
from paylink.api.routes.links import router as links_router

__all__ = ["health_router", "history_router", "links_router"]
