"""Services package for the rate limiter.

This package provides:
- The shared counter store adapter (Redis)
- The process-local fallback cache
- The sliding-window admission engine
- Node heartbeat and liveness tracking
"""

from ratelimiter.app.services.counter_store import CounterStore, RedisCounterStore
from ratelimiter.app.services.local_fallback import LocalFallbackCache
from ratelimiter.app.services.node_liveness import NodeHealthRecord, NodeLivenessTracker
from ratelimiter.app.services.rate_limiter import (
    Decision,
    RateLimitEngine,
    RateLimitOptions,
    StatusError,
    StatusResult,
)

__all__ = [
    "CounterStore",
    "RedisCounterStore",
    "LocalFallbackCache",
    "NodeHealthRecord",
    "NodeLivenessTracker",
    "Decision",
    "RateLimitEngine",
    "RateLimitOptions",
    "StatusError",
    "StatusResult",
]
