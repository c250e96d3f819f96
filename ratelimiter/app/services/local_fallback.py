"""Process-local request counting used while the shared store is down.

Counts here are per-process only and are never authoritative across nodes,
so decisions built from them always admit the request (fail-open).
"""

import asyncio
from typing import Dict, List, Optional

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.core.utils import now_ms as current_ms

logger = get_logger(__name__)


class LocalFallbackCache:
    """In-memory sliding-window counter keyed by limiter key.

    Memory is bounded by:
    - Pruning each key's timestamps to the window on every record
    - An eager sweep against the retention horizon once the key count
      exceeds max_keys
    - An optional periodic sweep running as a background task

    The lock is owned by the cache, not the engine, so store-path checks
    never wait on it.
    """

    def __init__(
        self,
        max_keys: Optional[int] = None,
        retention_ms: Optional[int] = None,
        cleanup_interval: Optional[float] = None,
    ) -> None:
        """Initialize the cache.

        Args:
            max_keys: Key count that triggers an eager sweep (default: 10000)
            retention_ms: Horizon kept by sweeps in milliseconds (default: 1 hour)
            cleanup_interval: Seconds between background sweeps (default: 60)
        """
        self._max_keys = max_keys or settings.local_cache_max_keys
        self._retention_ms = retention_ms or settings.local_cache_retention_ms
        self._cleanup_interval = cleanup_interval or settings.local_cache_cleanup_interval_seconds
        self._entries: Dict[str, List[int]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def record_and_count(self, key: str, now_ms: int, window_ms: int) -> int:
        """Record one request and return the number inside the window.

        Args:
            key: Limiter key
            now_ms: Current time in epoch milliseconds
            window_ms: Window length in milliseconds

        Returns:
            Requests within (now - window, now], including this one
        """
        async with self._lock:
            window_start = now_ms - window_ms
            timestamps = [ts for ts in self._entries.get(key, ()) if ts > window_start]
            timestamps.append(now_ms)
            self._entries[key] = timestamps

            if len(self._entries) > self._max_keys:
                self._sweep(now_ms)

            return len(timestamps)

    async def count(self, key: str, now_ms: int, window_ms: int) -> int:
        """Number of recorded requests inside the window, without recording."""
        async with self._lock:
            window_start = now_ms - window_ms
            return sum(1 for ts in self._entries.get(key, ()) if ts > window_start)

    async def delete(self, key: str) -> bool:
        """Forget a key. Returns True if it was present."""
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def cleanup(self, now_ms: Optional[int] = None) -> int:
        """Sweep every entry against the retention horizon.

        Returns:
            Number of keys removed
        """
        async with self._lock:
            return self._sweep(now_ms if now_ms is not None else current_ms())

    def _sweep(self, now_ms: int) -> int:
        horizon = now_ms - self._retention_ms
        removed = 0
        for key in list(self._entries):
            recent = [ts for ts in self._entries[key] if ts > horizon]
            if recent:
                self._entries[key] = recent
            else:
                del self._entries[key]
                removed += 1
        if removed:
            logger.debug(f"Local fallback sweep removed {removed} keys ({len(self._entries)} left)")
        return removed

    async def start_cleanup_task(self) -> None:
        """Start the periodic sweep task."""
        if self._cleanup_task is not None:
            return
        self._stop_event.clear()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Started local fallback cleanup (interval: {self._cleanup_interval}s)")

    async def stop_cleanup_task(self) -> None:
        """Stop the periodic sweep task."""
        if self._cleanup_task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._cleanup_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None
        logger.info("Stopped local fallback cleanup")

    async def _cleanup_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._cleanup_interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.cleanup()
            except Exception as e:
                logger.error(f"Error during local fallback cleanup: {e}")
