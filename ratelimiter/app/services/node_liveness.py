"""Node heartbeat publication and liveness queries.

Each node periodically writes its own ``node:{node_id}`` hash with a TTL.
Peers treat a node as dead once the record has expired or reports
``status: shutdown``. Nodes never write each other's records.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.hash_ring import HashRing
from ratelimiter.app.core.logging import get_logger
from ratelimiter.app.core.utils import now_ms
from ratelimiter.app.services.counter_store import CounterStore

logger = get_logger(__name__)

NODE_KEY_PREFIX = "node"


def node_key(node_id: str) -> str:
    return f"{NODE_KEY_PREFIX}:{node_id}"


@dataclass
class NodeHealthRecord:
    """Heartbeat record published by a node.

    Attributes:
        node_id: The node that owns the record
        last_heartbeat: Epoch milliseconds of the last heartbeat
        status: "active" or "shutdown"
    """
    node_id: str
    last_heartbeat: int
    status: str = field(default="active")

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_mapping(self) -> Dict[str, str]:
        """Hash fields as stored in Redis."""
        return {"lastHeartbeat": str(self.last_heartbeat), "status": self.status}

    @classmethod
    def from_mapping(cls, node_id: str, data: Dict[str, str]) -> "NodeHealthRecord":
        return cls(
            node_id=node_id,
            last_heartbeat=int(data.get("lastHeartbeat", 0)),
            status=data.get("status", "active"),
        )


class NodeLivenessTracker:
    """Publishes this node's heartbeat and answers liveness queries.

    Lifecycle: Unknown -> Active -> (heartbeat refresh)* -> ShuttingDown ->
    absent after TTL.

    Usage:
        tracker = NodeLivenessTracker(store, node_id="node-a")
        await tracker.start()
        active = await tracker.list_active_nodes()
        await tracker.stop()  # writes status=shutdown, best effort
    """

    def __init__(
        self,
        store: CounterStore,
        node_id: Optional[str] = None,
        interval: Optional[float] = None,
        ttl_seconds: Optional[int] = None,
        shutdown_timeout: Optional[float] = None,
    ):
        """Initialize the tracker.

        Args:
            store: Shared counter store
            node_id: Identifier of this node (default: settings.node_id)
            interval: Seconds between heartbeats (default: heartbeat_interval_ms / 1000)
            ttl_seconds: Record expiry (default: 30)
            shutdown_timeout: Upper bound on the final shutdown write in seconds
        """
        self._store = store
        self._node_id = node_id or settings.node_id
        self._interval = interval or settings.heartbeat_interval_ms / 1000
        self._ttl_seconds = ttl_seconds or settings.heartbeat_ttl_seconds
        self._shutdown_timeout = shutdown_timeout or settings.shutdown_timeout_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._stopped = False

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def running(self) -> bool:
        return self._task is not None

    async def beat(self) -> bool:
        """Publish one heartbeat if the store is reachable.

        Returns:
            True if the heartbeat was written, False if skipped or failed
        """
        try:
            if not await self._store.is_ready():
                logger.debug("Heartbeat skipped - counter store unavailable")
                return False
            record = NodeHealthRecord(node_id=self._node_id, last_heartbeat=now_ms())
            await self._store.write_heartbeat(
                node_key(self._node_id), record.to_mapping(), self._ttl_seconds
            )
            return True
        except Exception as e:
            logger.debug(f"Heartbeat skipped - {e}")
            return False

    async def start(self) -> None:
        """Publish a first heartbeat and start the background refresh task."""
        if self._task is not None:
            logger.debug("Heartbeat already running")
            return

        self._stop_event.clear()
        self._stopped = False
        await self.beat()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started heartbeat for {self._node_id} (interval: {self._interval}s)")

    async def stop(self) -> None:
        """Stop heartbeats and publish a final shutdown status.

        Waits are bounded so an unreachable store cannot block shutdown.
        Safe to call more than once.
        """
        if self._stopped:
            return
        self._stopped = True

        if self._task is not None:
            self._stop_event.set()
            try:
                await asyncio.wait_for(self._task, timeout=self._shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("Heartbeat task did not stop gracefully, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            finally:
                self._task = None

        try:
            await asyncio.wait_for(self._mark_shutdown(), timeout=self._shutdown_timeout)
        except Exception as e:
            logger.error(f"Shutdown cleanup failed: {e}")
        logger.info(f"Stopped heartbeat for {self._node_id}")

    async def _mark_shutdown(self) -> None:
        """Publish status=shutdown with the usual TTL so the record still expires."""
        if await self._store.is_ready():
            record = NodeHealthRecord(
                node_id=self._node_id, last_heartbeat=now_ms(), status="shutdown"
            )
            await self._store.write_heartbeat(
                node_key(self._node_id), record.to_mapping(), self._ttl_seconds
            )

    async def _run(self) -> None:
        """Background task publishing heartbeats until stopped."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self.beat()

    async def get_status(self, node_id: str) -> Optional[NodeHealthRecord]:
        """Read a node's heartbeat record.

        Returns:
            The record, or None when absent (expired or never written)

        Raises:
            StoreUnavailableError, StoreOperationError: when the store cannot answer
        """
        data = await self._store.get_hash(node_key(node_id))
        if not data:
            return None
        return NodeHealthRecord.from_mapping(node_id, data)

    async def list_active_nodes(self) -> List[str]:
        """Identifiers of nodes whose records exist and report active.

        Raises:
            StoreUnavailableError, StoreOperationError: when the store cannot answer
        """
        prefix = f"{NODE_KEY_PREFIX}:"
        active = []
        for key in await self._store.scan_keys(f"{prefix}*"):
            node_id = key[len(prefix):]
            record = await self.get_status(node_id)
            if record is not None and record.is_active:
                active.append(node_id)
        return sorted(active)

    async def sync_ring(self, ring: HashRing) -> bool:
        """Rebuild a ring's membership from the active nodes.

        This node is always kept as a member. Leaves the ring untouched when
        the store cannot be read.

        Returns:
            True if the ring was updated
        """
        try:
            active = await self.list_active_nodes()
        except Exception as e:
            logger.debug(f"Ring sync skipped - {e}")
            return False
        ring.set_members(set(active) | {self._node_id})
        return True
