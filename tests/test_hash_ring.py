"""Tests for the consistent hash ring."""

import hashlib

import pytest

from ratelimiter.app.core.hash_ring import HashRing, ring_hash


class TestRingHash:
    """Tests for key hashing."""

    def test_md5_hex_digest(self):
        assert ring_hash("user-42") == hashlib.md5(b"user-42").hexdigest()

    def test_fixed_width(self):
        assert len(ring_hash("")) == len(ring_hash("a much longer key")) == 32


class TestHashRing:
    """Tests for HashRing membership and lookup."""

    @pytest.fixture
    def ring(self):
        return HashRing(["a", "b", "c"], replicas=256)

    def test_empty_ring_lookup_returns_none(self):
        ring = HashRing(replicas=16)
        assert ring.lookup("anything") is None
        assert len(ring) == 0

    def test_invalid_replicas(self):
        with pytest.raises(ValueError):
            HashRing(replicas=0)

    def test_positions_per_member(self, ring):
        assert ring.members == ["a", "b", "c"]
        assert len(ring.positions) == 3 * 256
        assert ring.positions == sorted(ring.positions)

    def test_lookup_is_total(self, ring):
        """Every key maps to a member."""
        for i in range(500):
            assert ring.lookup(f"key-{i}") in {"a", "b", "c"}

    def test_lookup_is_deterministic(self, ring):
        other = HashRing(["c", "a", "b"], replicas=256)
        for i in range(200):
            key = f"user-{i}"
            assert ring.lookup(key) == ring.lookup(key) == other.lookup(key)

    def test_lookup_picks_first_position_at_or_after_hash(self):
        ring = HashRing(["a", "b"], replicas=4)
        positions = ring.positions
        for i in range(100):
            key = f"k{i}"
            expected = next((p for p in positions if p >= ring_hash(key)), positions[0])
            assert ring.lookup(key) == ring._owners[expected]

    def test_lookup_wraps_past_last_position(self):
        ring = HashRing(["a", "b"], replicas=4)
        positions = ring.positions
        key = next(k for k in (f"k{i}" for i in range(10000)) if ring_hash(k) > positions[-1])
        assert ring.lookup(key) == ring._owners[positions[0]]

    def test_add_member_is_idempotent(self, ring):
        ring.add_member("a")
        assert len(ring.positions) == 3 * 256
        assert len(ring) == 3

    def test_remove_member(self, ring):
        ring.remove_member("b")
        assert "b" not in ring
        assert len(ring.positions) == 2 * 256
        for i in range(300):
            assert ring.lookup(f"key-{i}") != "b"

    def test_remove_unknown_member_is_noop(self, ring):
        ring.remove_member("zzz")
        assert ring.members == ["a", "b", "c"]

    def test_remove_only_moves_keys_of_removed_member(self, ring):
        keys = [f"key-{i}" for i in range(500)]
        before = {key: ring.lookup(key) for key in keys}
        ring.remove_member("b")
        for key in keys:
            if before[key] != "b":
                assert ring.lookup(key) == before[key]

    def test_adding_member_only_moves_keys_to_it(self, ring):
        """Keys either stay or move to the new member d."""
        keys = [f"key-{i}" for i in range(500)]
        before = {key: ring.lookup(key) for key in keys}
        ring.add_member("d")

        moved = [key for key in keys if ring.lookup(key) != before[key]]
        assert moved
        assert all(ring.lookup(key) == "d" for key in moved)

    def test_set_members(self, ring):
        ring.set_members(["b", "d"])
        assert ring.members == ["b", "d"]
        assert len(ring.positions) == 2 * 256

    def test_aliases(self, ring):
        ring.add_node("d")
        assert "d" in ring
        assert ring.get_node("user-1") == ring.lookup("user-1")
        ring.remove_node("d")
        assert "d" not in ring

    def test_join_scenario(self, ring):
        before = ring.lookup("user-42")
        assert before in {"a", "b", "c"}

        ring.add_node("d")
        assert ring.lookup("user-42") in {before, "d"}
