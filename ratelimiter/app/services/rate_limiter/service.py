"""Sliding-window admission engine.

Decides whether a request is admitted against a quota over a sliding
window shared by every node through the counter store, and degrades to a
process-local, fail-open count when the store cannot be used.
"""

import asyncio
from typing import Optional, Union

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.hash_ring import HashRing
from ratelimiter.app.core.logging import get_log_context, get_logger
from ratelimiter.app.core.utils import hour_bucket, now_ms
from ratelimiter.app.exceptions import RateLimiterException
from ratelimiter.app.services.counter_store import CounterStore
from ratelimiter.app.services.local_fallback import LocalFallbackCache

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

logger = get_logger(__name__)

KEY_PREFIX = "ratelimit"


class RateLimitEngine:
    """Decision authority for admission control.

    Provides:
    - Sliding-window checks executed atomically in the counter store
    - Burst headroom above the nominal limit
    - Fail-open fallback to a local cache when the store is unavailable
    - Hourly usage statistics (best effort)
    - Administrative status and reset

    The store and cache are injected; nothing here is process-global.
    """

    def __init__(
        self,
        store: CounterStore,
        local_cache: Optional[LocalFallbackCache] = None,
        ring: Optional[HashRing] = None,
        default_limit: Optional[int] = None,
        default_window_ms: Optional[int] = None,
        burst_ratio: Optional[float] = None,
        stats_ttl_seconds: Optional[int] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Shared counter store
            local_cache: Fallback cache (a new one is created when omitted)
            ring: Optional hash ring used by owner_of()
            default_limit: Limit when a check does not specify one
            default_window_ms: Window when a check does not specify one
            burst_ratio: Burst as a fraction of limit when unspecified
            stats_ttl_seconds: Expiry of the hourly statistics buckets
        """
        self._store = store
        self._local_cache = local_cache if local_cache is not None else LocalFallbackCache()
        self._ring = ring
        self._default_limit = default_limit or settings.default_rate_limit
        self._default_window_ms = default_window_ms or settings.default_window_ms
        self._burst_ratio = burst_ratio if burst_ratio is not None else settings.burst_ratio
        self._stats_ttl_seconds = stats_ttl_seconds or settings.stats_ttl_seconds

    @property
    def store(self) -> CounterStore:
        return self._store

    @property
    def local_cache(self) -> LocalFallbackCache:
        return self._local_cache

    @property
    def ring(self) -> Optional[HashRing]:
        return self._ring

    def generate_key(self, identifier: str, action: Optional[str] = None) -> str:
        """Create the limiter key for an identifier/action pair."""
        return f"{KEY_PREFIX}:{identifier}:{action or 'default'}"

    def resolve_options(self, options: Optional[RateLimitOptions] = None) -> ResolvedOptions:
        return ResolvedOptions.resolve(
            options or RateLimitOptions(),
            default_limit=self._default_limit,
            default_window_ms=self._default_window_ms,
            burst_ratio=self._burst_ratio,
        )

    async def check(
        self,
        identifier: str,
        options: Optional[RateLimitOptions] = None,
        **overrides,
    ) -> Decision:
        """Count this request and decide whether it is admitted.

        Options may be passed as a RateLimitOptions or as keyword overrides
        (limit, window_ms, action, burst). Store problems never propagate.

        Returns:
            Decision for this request
        """
        if overrides:
            if options is not None:
                raise TypeError("pass either options or keyword overrides, not both")
            options = RateLimitOptions(**overrides)

        resolved = self.resolve_options(options)
        key = self.generate_key(identifier, resolved.action)
        now = now_ms()

        outcome = await self._attempt_store(key, now, resolved.window_ms)

        if isinstance(outcome, Served):
            decision = self._authoritative_decision(outcome.count, now, resolved)
            if not decision.allowed:
                logger.warning(
                    "Rate limit exceeded",
                    extra=get_log_context(
                        identifier=identifier,
                        action=resolved.action,
                        limiter_key=key,
                        current=decision.current,
                        limit=decision.limit,
                    ),
                )
        else:
            logger.debug(
                f"Using local fallback: {outcome.reason}",
                extra=get_log_context(identifier=identifier, limiter_key=key, fallback=True),
            )
            count = await self._local_cache.record_and_count(key, now, resolved.window_ms)
            decision = self._fallback_decision(count, now, resolved)

        await self._record_stats(identifier, decision.allowed, now)
        return decision

    async def _attempt_store(self, key: str, now: int, window_ms: int) -> StoreOutcome:
        """Run the sliding-window transaction, reporting failure as a value."""
        try:
            if not await self._store.is_ready():
                return Unavailable("store not ready")
            count = await self._store.sliding_window_check(key, now, window_ms)
        except RateLimiterException as e:
            logger.error(f"Rate limit check failed: {e.message}", extra=get_log_context(limiter_key=key))
            return Unavailable(e.message)
        except (asyncio.TimeoutError, OSError) as e:
            logger.error(f"Rate limit check failed: {e}", extra=get_log_context(limiter_key=key))
            return Unavailable(type(e).__name__)
        except Exception as e:
            logger.exception(f"Unexpected rate limit error: {e}", extra=get_log_context(limiter_key=key))
            return Unavailable(type(e).__name__)
        return Served(count)

    @staticmethod
    def _authoritative_decision(count: int, now: int, options: ResolvedOptions) -> Decision:
        ceiling = options.limit + options.burst
        return Decision(
            allowed=count <= ceiling,
            current=count,
            limit=options.limit,
            remaining=max(0, ceiling - count),
            reset_at=now + options.window_ms,
            burst_state="used" if count > options.limit else "available",
            fallback=False,
        )

    @staticmethod
    def _fallback_decision(count: int, now: int, options: ResolvedOptions) -> Decision:
        return Decision(
            allowed=True,
            current=count,
            limit=options.limit,
            remaining=max(0, options.limit + options.burst - count),
            reset_at=now + options.window_ms,
            burst_state=None,
            fallback=True,
        )

    async def _record_stats(self, identifier: str, allowed: bool, now: int) -> None:
        """Best-effort hourly statistics; failures never affect decisions."""
        try:
            await self._store.increment_stats(
                hour_bucket(now), identifier, allowed, self._stats_ttl_seconds
            )
        except Exception as e:
            logger.debug(f"Failed to record metrics: {e}")

    async def status(
        self, identifier: str, action: str = "default"
    ) -> Union[StatusResult, StatusError]:
        """Read the authoritative window size from the store.

        Never consults the local cache: its count is per-process only.
        """
        action = action or "default"
        try:
            if not await self._store.is_ready():
                return StatusError("Counter store unavailable")
            count = await self._store.get_cardinality(self.generate_key(identifier, action))
        except Exception as e:
            logger.error(
                f"Failed to get rate limit status: {e}",
                extra=get_log_context(identifier=identifier, action=action),
            )
            return StatusError("Status check failed")
        return StatusResult(current=count, identifier=identifier, action=action)

    async def reset(self, identifier: str, action: str = "default") -> bool:
        """Delete the counter for an identifier/action pair.

        Removes the store key when the store is ready, and always the local
        entry. Never raises.

        Returns:
            True on success, False if the store delete failed
        """
        key = self.generate_key(identifier, action)
        try:
            if await self._store.is_ready():
                await self._store.delete_key(key)
            await self._local_cache.delete(key)
        except Exception as e:
            logger.error(
                f"Failed to reset rate limit: {e}",
                extra=get_log_context(identifier=identifier, action=action, limiter_key=key),
            )
            return False
        logger.info("Rate limit reset", extra=get_log_context(identifier=identifier, action=action))
        return True

    def owner_of(self, identifier: str) -> Optional[str]:
        """Node owning an identifier on the hash ring (None without a ring).

        Informational only: check() does not consult it.
        """
        if self._ring is None:
            return None
        return self._ring.lookup(identifier)

    async def start(self) -> None:
        """Start background maintenance tasks."""
        await self._local_cache.start_cleanup_task()

    async def stop(self) -> None:
        """Stop background maintenance tasks."""
        await self._local_cache.stop_cleanup_task()
