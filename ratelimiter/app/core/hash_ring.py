"""Consistent hash ring for assigning identifiers to cooperating nodes.

Each member is placed on the ring at ``replicas`` virtual positions. A key is
owned by the member at the first position greater than or equal to the key's
hash, wrapping around to the first position. For a fixed membership every
node computes the same owner for the same key without coordination.
"""

import hashlib
from bisect import bisect_left
from typing import Dict, Iterable, List, Optional

from ratelimiter.app.core.config import settings
from ratelimiter.app.core.logging import get_logger

logger = get_logger(__name__)


def ring_hash(key: str) -> str:
    """Hash a key onto the ring.

    MD5 hex digests are fixed-width, so string order equals numeric order.
    """
    return hashlib.md5(key.encode("utf-8")).hexdigest()


class HashRing:
    """Consistent hash ring with virtual-node replication.

    Membership changes rebuild the sorted position list; lookups are a binary
    search over it. Joins and leaves are rare compared to lookups.

    Usage:
        ring = HashRing(["a", "b", "c"])
        owner = ring.lookup("user-42")
        ring.add_member("d")
    """

    def __init__(self, members: Iterable[str] = (), replicas: Optional[int] = None):
        """Initialize the ring.

        Args:
            members: Initial member identifiers
            replicas: Virtual positions per member (default: settings.ring_replicas)

        Raises:
            ValueError: If replicas is less than 1
        """
        self._replicas = replicas if replicas is not None else settings.ring_replicas
        if self._replicas < 1:
            raise ValueError("replicas must be >= 1")

        self._owners: Dict[str, str] = {}
        self._positions: List[str] = []
        self._members: set[str] = set()

        for member in members:
            self.add_member(member)

    @property
    def replicas(self) -> int:
        return self._replicas

    @property
    def members(self) -> List[str]:
        """Current members, sorted."""
        return sorted(self._members)

    @property
    def positions(self) -> List[str]:
        """Sorted ring positions (copy)."""
        return list(self._positions)

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, member: object) -> bool:
        return member in self._members

    def _member_positions(self, member: str) -> List[str]:
        return [ring_hash(f"{member}:{i}") for i in range(self._replicas)]

    def add_member(self, member: str) -> None:
        """Place a member on the ring at all of its virtual positions.

        Adding an existing member is a no-op.
        """
        if member in self._members:
            return

        for position in self._member_positions(member):
            existing = self._owners.get(position)
            if existing is not None and existing != member:
                logger.warning(
                    f"Ring position collision between '{existing}' and '{member}'"
                )
            self._owners[position] = member

        self._members.add(member)
        self._positions = sorted(self._owners)
        logger.debug(f"Added ring member '{member}' ({len(self._members)} members)")

    def remove_member(self, member: str) -> None:
        """Remove every position owned by a member."""
        if member not in self._members:
            return

        self._owners = {
            position: owner
            for position, owner in self._owners.items()
            if owner != member
        }
        self._members.discard(member)
        self._positions = sorted(self._owners)
        logger.debug(f"Removed ring member '{member}' ({len(self._members)} members)")

    def set_members(self, members: Iterable[str]) -> None:
        """Replace the membership in one rebuild."""
        wanted = set(members)
        for member in self._members - wanted:
            self.remove_member(member)
        for member in sorted(wanted - self._members):
            self.add_member(member)

    def lookup(self, key: str) -> Optional[str]:
        """Return the member owning a key, or None for an empty ring."""
        if not self._positions:
            return None

        index = bisect_left(self._positions, ring_hash(key))
        if index == len(self._positions):
            index = 0
        return self._owners[self._positions[index]]

    # Node-oriented aliases
    add_node = add_member
    remove_node = remove_member
    get_node = lookup
