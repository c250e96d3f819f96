"""API endpoints package for the rate limiter."""

from ratelimiter.app.api.admin import router as admin_router

__all__ = [
    "admin_router",
]
