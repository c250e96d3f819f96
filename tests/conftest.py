"""Shared fixtures for the rate limiter tests.

FakeRedis implements the subset of the redis.asyncio client API that
RedisCounterStore uses, so the adapter and the engine run end-to-end
without a server. FakeCounterStore is a plain in-memory CounterStore whose
readiness and failures can be toggled per test.
"""

import fnmatch
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
import redis.exceptions

from ratelimiter.app.core.retry import RetryPolicy
from ratelimiter.app.exceptions import StoreOperationError, StoreUnavailableError
from ratelimiter.app.services.counter_store import CounterStore, RedisCounterStore
from ratelimiter.app.services.local_fallback import LocalFallbackCache
from ratelimiter.app.services.rate_limiter import RateLimitEngine


# ============================================================================
# Fake redis.asyncio client
# ============================================================================

class FakePipeline:
    """Buffered MULTI/EXEC pipeline over a FakeRedis."""

    def __init__(self, redis: "FakeRedis", transaction: bool = True):
        self._redis = redis
        self.transaction = transaction
        self._commands: List[tuple] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        self._commands.clear()

    def _queue(self, name: str, *args, **kwargs) -> "FakePipeline":
        self._commands.append((name, args, kwargs))
        return self

    def zremrangebyscore(self, *args):
        return self._queue("zremrangebyscore", *args)

    def zadd(self, *args):
        return self._queue("zadd", *args)

    def zcard(self, *args):
        return self._queue("zcard", *args)

    def expire(self, *args):
        return self._queue("expire", *args)

    def hincrby(self, *args):
        return self._queue("hincrby", *args)

    def hset(self, *args, **kwargs):
        return self._queue("hset", *args, **kwargs)

    async def execute(self) -> List[Any]:
        self._redis._check()
        self._redis.transactions += 1
        results = [
            getattr(self._redis, f"_{name}")(*args, **kwargs)
            for name, args, kwargs in self._commands
        ]
        self._commands.clear()
        return results


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (bytes responses)."""

    def __init__(self):
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False
        self.ping_calls = 0
        self.transactions = 0
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise redis.exceptions.ConnectionError("Connection refused")

    def _keys(self) -> List[str]:
        return list(self.zsets) + list(self.hashes)

    # Synchronous implementations shared with the pipeline

    def _zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        zset = self.zsets.get(key, {})
        doomed = [m for m, s in zset.items() if min_score <= s <= max_score]
        for member in doomed:
            del zset[member]
        return len(doomed)

    def _zadd(self, key: str, mapping: Dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    def _zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    def _expire(self, key: str, seconds: int) -> bool:
        if key not in self.zsets and key not in self.hashes:
            return False
        self.ttls[key] = seconds
        return True

    def _hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = str(int(bucket.get(field, 0)) + amount)
        return int(bucket[field])

    def _hset(self, key: str, field: Optional[str] = None, value: Any = None,
              mapping: Optional[Dict[str, Any]] = None) -> int:
        bucket = self.hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = sum(1 for f in items if f not in bucket)
        bucket.update({f: str(v) for f, v in items.items()})
        return added

    # Async client API

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self, transaction=transaction)

    async def ping(self) -> bool:
        self.ping_calls += 1
        self._check()
        return True

    async def zcard(self, key: str) -> int:
        self._check()
        return self._zcard(key)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._check()
        return self._hincrby(key, field, amount)

    async def hset(self, key: str, field: Optional[str] = None, value: Any = None,
                   mapping: Optional[Dict[str, Any]] = None) -> int:
        self._check()
        return self._hset(key, field, value, mapping)

    async def hgetall(self, key: str) -> Dict[bytes, bytes]:
        self._check()
        return {f.encode(): v.encode() for f, v in self.hashes.get(key, {}).items()}

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            found = self.zsets.pop(key, None) is not None
            found = self.hashes.pop(key, None) is not None or found
            self.ttls.pop(key, None)
            deleted += int(found)
        return deleted

    async def scan_iter(self, match: Optional[str] = None):
        self._check()
        for key in self._keys():
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key.encode()

    async def aclose(self) -> None:
        self.closed = True


# ============================================================================
# Fake counter store
# ============================================================================

class FakeCounterStore(CounterStore):
    """In-memory CounterStore with switchable readiness and failures.

    Attributes:
        ready: Result of is_ready() and connect()
        failing: Operation names that raise StoreOperationError
    """

    def __init__(self, ready: bool = True):
        self.ready = ready
        self.failing: set[str] = set()
        self.windows: Dict[str, List[int]] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.ttls: Dict[str, int] = {}
        self.closed = False

    def _guard(self, operation: str) -> None:
        if not self.ready:
            raise StoreUnavailableError()
        if operation in self.failing:
            raise StoreOperationError(operation, "simulated failure")

    async def connect(self) -> bool:
        return self.ready

    async def is_ready(self) -> bool:
        return self.ready

    async def sliding_window_check(self, key: str, now_ms: int, window_ms: int) -> int:
        self._guard("sliding_window_check")
        window = [ts for ts in self.windows.get(key, []) if ts > now_ms - window_ms]
        window.append(now_ms)
        self.windows[key] = window
        return len(window)

    async def increment_stats(self, hour: int, identifier: str, allowed: bool, ttl_seconds: int) -> None:
        self._guard("increment_stats")
        await self.increment_stat(f"stats:{hour}", "total")
        await self.increment_stat(f"stats:{hour}", "allowed" if allowed else "blocked")
        await self.increment_stat(f"stats:{hour}:users", identifier)
        self.ttls[f"stats:{hour}"] = ttl_seconds
        self.ttls[f"stats:{hour}:users"] = ttl_seconds

    async def increment_stat(self, bucket_key: str, field: str, amount: int = 1) -> int:
        bucket = self.hashes.setdefault(bucket_key, {})
        bucket[field] = str(int(bucket.get(field, 0)) + amount)
        return int(bucket[field])

    async def get_cardinality(self, key: str) -> int:
        self._guard("get_cardinality")
        return len(self.windows.get(key, []))

    async def delete_key(self, key: str) -> bool:
        self._guard("delete_key")
        found = self.windows.pop(key, None) is not None
        return self.hashes.pop(key, None) is not None or found

    async def write_heartbeat(self, key: str, mapping: Dict[str, str], ttl_seconds: int) -> None:
        self._guard("write_heartbeat")
        self.hashes.setdefault(key, {}).update(mapping)
        self.ttls[key] = ttl_seconds

    async def get_hash(self, key: str) -> Dict[str, str]:
        self._guard("get_hash")
        return dict(self.hashes.get(key, {}))

    async def scan_keys(self, pattern: str) -> List[str]:
        self._guard("scan_keys")
        keys = list(self.windows) + list(self.hashes)
        return [key for key in keys if fnmatch.fnmatchcase(key, pattern)]

    async def close(self) -> None:
        self.closed = True


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fast_retry_policy():
    """Retry policy without backoff delays."""
    return RetryPolicy(max_retries=2, step_delay=0.0, max_delay=0.0)


@pytest_asyncio.fixture
async def redis_store(fake_redis, fast_retry_policy):
    """Connected RedisCounterStore backed by FakeRedis."""
    store = RedisCounterStore(
        redis_client=fake_redis,
        operation_timeout=0.5,
        retry_policy=fast_retry_policy,
    )
    assert await store.connect() is True
    yield store
    await store.close()


@pytest.fixture
def counter_store():
    return FakeCounterStore()


@pytest.fixture
def local_cache():
    return LocalFallbackCache(max_keys=100, retention_ms=3600000, cleanup_interval=60.0)


@pytest.fixture
def engine(counter_store, local_cache):
    """Engine with limit=10, window=1s and the default 10% burst (B=1)."""
    return RateLimitEngine(
        counter_store,
        local_cache=local_cache,
        default_limit=10,
        default_window_ms=1000,
        burst_ratio=0.1,
    )
