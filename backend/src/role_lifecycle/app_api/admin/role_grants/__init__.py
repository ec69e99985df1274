"""Admin role grant routes."""

from .routes import router

__all__ = ["router"]
