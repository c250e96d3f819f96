"""Shared counter store used by the rate limiter.

Provides the narrow set of operations the limiter needs from a shared
key-value backend (atomic pipelines, sorted sets, hashes, key expiry and a
liveness probe) behind an abstract interface, with a Redis implementation.

Redis key format:
- ratelimit:{identifier}:{action} - Sorted set of admitted requests (score = ms)
- stats:{hour} - Hash of total / allowed / blocked counters
- stats:{hour}:users - Hash of per-identifier counters
- node:{node_id} - Hash of node heartbeat fields
"""

import asyncio
import secrets
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import redis.asyncio as aioredis
import redis.exceptions

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.core.retry import RetryPolicy, with_retry
from ratelimiter.app.core.utils import seconds_ceil
from ratelimiter.app.exceptions import StoreOperationError, StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")


def window_member(now_ms: int) -> str:
    """Sorted-set member for one admitted request.

    The random suffix keeps two requests in the same millisecond distinct.
    """
    return f"{now_ms}:{secrets.token_hex(6)}"


class CounterStore(ABC):
    """Abstract base class for shared counter stores.

    Every operation either returns a real result or raises
    StoreUnavailableError / StoreOperationError. Implementations never
    fabricate results.
    """

    @abstractmethod
    async def connect(self) -> bool:
        """Establish the connection. Returns False instead of raising."""
        pass

    @abstractmethod
    async def is_ready(self) -> bool:
        """Whether the store is connected and answers a live probe."""
        pass

    @abstractmethod
    async def sliding_window_check(self, key: str, now_ms: int, window_ms: int) -> int:
        """Atomically prune, insert and count one sliding window.

        Args:
            key: Limiter key
            now_ms: Current time in epoch milliseconds
            window_ms: Window length in milliseconds

        Returns:
            Number of requests in the window, including this one
        """
        pass

    @abstractmethod
    async def increment_stats(
        self, hour: int, identifier: str, allowed: bool, ttl_seconds: int
    ) -> None:
        """Record one decision in the hourly statistics buckets."""
        pass

    @abstractmethod
    async def increment_stat(self, bucket_key: str, field: str, amount: int = 1) -> int:
        """Increment a single hash field counter."""
        pass

    @abstractmethod
    async def get_cardinality(self, key: str) -> int:
        """Number of members in a sorted set (0 when missing)."""
        pass

    @abstractmethod
    async def delete_key(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        pass

    @abstractmethod
    async def write_heartbeat(self, key: str, mapping: Dict[str, str], ttl_seconds: int) -> None:
        """Atomically set hash fields and refresh the key's TTL."""
        pass

    @abstractmethod
    async def get_hash(self, key: str) -> Dict[str, str]:
        """Read a whole hash (empty dict when missing)."""
        pass

    @abstractmethod
    async def scan_keys(self, pattern: str) -> List[str]:
        """List keys matching a glob pattern."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections and background tasks."""
        pass


def _decode(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisCounterStore(CounterStore):
    """Redis-backed counter store.

    Connection policy:
    - Lazy: no connection is made until connect() or the first readiness probe
    - Retries with linear backoff (step x attempt, capped) on connect
    - is_ready() combines the last known state with a live PING
    - A failed probe or connection error marks the store disconnected and
      schedules a background reconnect, so callers never wait on it

    Example:
        >>> store = RedisCounterStore()
        >>> await store.connect()
        >>> count = await store.sliding_window_check("ratelimit:ip:default", now, 60000)
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        password: Optional[str] = None,
        db: Optional[int] = None,
        operation_timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """Initialize the store.

        Args:
            redis_client: Pre-built redis.asyncio client (tests inject fakes here)
            host: Redis host (default: settings.redis_host)
            port: Redis port (default: settings.redis_port)
            password: Redis password (default: settings.redis_password)
            db: Redis database number (default: settings.redis_db)
            operation_timeout: Seconds allowed per round trip
            retry_policy: Connect retry policy
        """
        self._client = redis_client
        self._host = host or settings.redis_host
        self._port = port or settings.redis_port
        self._password = password if password is not None else settings.redis_password
        self._db = db if db is not None else settings.redis_db
        self._operation_timeout = operation_timeout or settings.redis_operation_timeout
        self._retry_policy = retry_policy or RetryPolicy(
            max_retries=settings.redis_max_retries,
            step_delay=settings.redis_retry_step_ms / 1000,
            max_delay=settings.redis_retry_max_delay_ms / 1000,
        )
        self._connected = False
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        """Last known connection state (no probe)."""
        return self._connected

    def _create_client(self) -> Any:
        return aioredis.Redis(
            host=self._host,
            port=self._port,
            password=self._password or None,
            db=self._db,
            socket_timeout=self._operation_timeout,
            socket_connect_timeout=self._operation_timeout,
        )

    async def _ping(self) -> None:
        await asyncio.wait_for(self._client.ping(), timeout=self._operation_timeout)

    async def connect(self) -> bool:
        """Connect (or reconnect) with retry and capped linear backoff.

        Returns:
            True once a PING succeeds, False if all attempts failed
        """
        async with self._connect_lock:
            if self._client is None:
                self._client = self._create_client()
            try:
                await with_retry(self._retry_policy)(self._ping)()
            except Exception as e:
                self._connected = False
                logger.error(f"Counter store connection failed: {type(e).__name__}: {e}")
                return False

            if not self._connected:
                logger.info(f"Counter store connected ({self._host}:{self._port}/{self._db})")
            self._connected = True
            return True

    def _mark_disconnected(self, reason: str) -> None:
        if self._connected:
            logger.error(f"Counter store disconnected: {reason}")
        self._connected = False
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reconnect_task = loop.create_task(self.connect())

    async def is_ready(self) -> bool:
        """Return True if connected and a live probe succeeds."""
        if not self._connected or self._client is None:
            self._schedule_reconnect()
            return False
        try:
            await self._ping()
        except Exception as e:
            self._mark_disconnected(f"{type(e).__name__}: {e}")
            return False
        return True

    async def _execute(
        self, operation: str, command: Callable[[Any], Awaitable[T]]
    ) -> T:
        """Run one round trip with readiness and timeout enforcement."""
        if not self._connected or self._client is None:
            raise StoreUnavailableError()
        try:
            return await asyncio.wait_for(command(self._client), timeout=self._operation_timeout)
        except asyncio.TimeoutError as e:
            raise StoreOperationError(operation, "timed out") from e
        except redis.exceptions.ConnectionError as e:
            self._mark_disconnected(str(e))
            raise StoreOperationError(operation, str(e)) from e
        except redis.exceptions.RedisError as e:
            raise StoreOperationError(operation, str(e)) from e

    async def sliding_window_check(self, key: str, now_ms: int, window_ms: int) -> int:
        """Prune, insert, count and refresh expiry in one MULTI/EXEC."""
        member = window_member(now_ms)
        expire_seconds = seconds_ceil(window_ms)

        async def command(client: Any) -> List[Any]:
            async with client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, 0, now_ms - window_ms)
                pipe.zadd(key, {member: now_ms})
                pipe.zcard(key)
                pipe.expire(key, expire_seconds)
                return await pipe.execute()

        results = await self._execute("sliding_window_check", command)
        if not results or len(results) < 3:
            raise StoreOperationError("sliding_window_check", "transaction returned no results")
        return int(results[2])

    async def increment_stats(
        self, hour: int, identifier: str, allowed: bool, ttl_seconds: int
    ) -> None:
        """HINCRBY total/outcome/identifier and refresh both bucket TTLs."""
        bucket = f"stats:{hour}"
        users_bucket = f"stats:{hour}:users"

        async def command(client: Any) -> List[Any]:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hincrby(bucket, "total", 1)
                pipe.hincrby(bucket, "allowed" if allowed else "blocked", 1)
                pipe.hincrby(users_bucket, identifier, 1)
                pipe.expire(bucket, ttl_seconds)
                pipe.expire(users_bucket, ttl_seconds)
                return await pipe.execute()

        await self._execute("increment_stats", command)

    async def increment_stat(self, bucket_key: str, field: str, amount: int = 1) -> int:
        value = await self._execute(
            "increment_stat", lambda client: client.hincrby(bucket_key, field, amount)
        )
        return int(value)

    async def get_cardinality(self, key: str) -> int:
        value = await self._execute("get_cardinality", lambda client: client.zcard(key))
        return int(value or 0)

    async def delete_key(self, key: str) -> bool:
        deleted = await self._execute("delete_key", lambda client: client.delete(key))
        return bool(deleted)

    async def write_heartbeat(self, key: str, mapping: Dict[str, str], ttl_seconds: int) -> None:
        async def command(client: Any) -> List[Any]:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=mapping)
                pipe.expire(key, ttl_seconds)
                return await pipe.execute()

        await self._execute("write_heartbeat", command)

    async def get_hash(self, key: str) -> Dict[str, str]:
        raw = await self._execute("get_hash", lambda client: client.hgetall(key))
        return {_decode(k): _decode(v) for k, v in (raw or {}).items()}

    async def scan_keys(self, pattern: str) -> List[str]:
        async def command(client: Any) -> List[str]:
            return [_decode(key) async for key in client.scan_iter(match=pattern)]

        return await self._execute("scan_keys", command)

    async def close(self) -> None:
        """Cancel reconnects and close the client."""
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.warning(f"Error closing counter store connection: {e}")
            self._client = None
        self._connected = False
