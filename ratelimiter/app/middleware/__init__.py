"""Middleware package for the rate limiter service."""

from ratelimiter.app.middleware.rate_limit import RateLimitMiddleware, get_client_identifier
from ratelimiter.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitMiddleware",
    "get_client_identifier",
    "RequestIdMiddleware",
    "get_request_id",
]
