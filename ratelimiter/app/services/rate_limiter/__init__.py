"""Sliding-window rate limiting shared across nodes through Redis.

This package provides the admission engine and its decision models, with a
fail-open local fallback when the counter store is unavailable.
"""

from .models import (
    Decision,
    RateLimitOptions,
    ResolvedOptions,
    Served,
    StatusError,
    StatusResult,
    StoreOutcome,
    Unavailable,
)
from .service import KEY_PREFIX, RateLimitEngine

__all__ = [
    "Decision",
    "RateLimitOptions",
    "ResolvedOptions",
    "Served",
    "StatusError",
    "StatusResult",
    "StoreOutcome",
    "Unavailable",
    "KEY_PREFIX",
    "RateLimitEngine",
]
