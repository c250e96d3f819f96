"""Core utilities for the rate limiter."""

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.hash_ring import HashRing
from ratelimiter.app.core.logging import get_logger, setup_logging
from ratelimiter.app.core.retry import RetryPolicy, with_retry

__all__ = [
    "settings",
    "HashRing",
    "get_logger",
    "setup_logging",
    "RetryPolicy",
    "with_retry",
]
