"""API module for HTTP routes and the event stream.

This module exposes the FastAPI routers for the sandbox runtime backend.
"""

from api.admin import admin_router
from api.routes import router

__all__ = ["admin_router", "router"]
