"""
Tests for feature hashing.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from malheur.errors import ConfigError
from malheur.features.hashing import FeatureHasher


class TestPureHashing:
    """Hashing without a lookup table."""

    def test_index_is_stable(self):
        """Test that a token maps to the same index on every call."""
        hasher = FeatureHasher(capacity=1000)
        first = hasher.index("open_file write_file")
        assert all(hasher.index("open_file write_file") == first for _ in range(10))

    def test_index_within_capacity(self):
        """Test that indices stay inside [0, capacity)."""
        hasher = FeatureHasher(capacity=7)
        for i in range(200):
            assert 0 <= hasher.index(f"token{i}") < 7

    def test_same_seed_same_mapping(self):
        """Test that the mapping is a function of token and seed only."""
        a = FeatureHasher(capacity=1 << 20, seed=42)
        b = FeatureHasher(capacity=1 << 20, seed=42)
        tokens = [f"call_{i}" for i in range(50)]
        assert [a.index(t) for t in tokens] == [b.index(t) for t in tokens]

    def test_bytes_and_str_tokens(self):
        """Test that str tokens hash like their UTF-8 bytes."""
        hasher = FeatureHasher(capacity=1 << 20)
        assert hasher.index("mutex") == hasher.index(b"mutex")

    def test_no_state_retained(self):
        """Test that pure hashing keeps no table."""
        hasher = FeatureHasher(capacity=100)
        hasher.index("a")
        assert len(hasher) == 0
        assert hasher.tokens_for(hasher.index("a")) == []
        assert hasher.lookup("a") == hasher.index("a")

    @pytest.mark.parametrize("capacity", [0, -5, 2.5, True])
    def test_invalid_capacity(self, capacity):
        """Test that a non-positive or non-integer capacity is rejected."""
        with pytest.raises(ConfigError) as exc_info:
            FeatureHasher(capacity=capacity)
        assert exc_info.value.option == "features.table_capacity"


class TestLookupTable:
    """Hashing with a retained lookup table."""

    def test_distinct_tokens_get_distinct_slots(self):
        """Test that probing avoids collisions while slots are free."""
        hasher = FeatureHasher(capacity=8, lookup_table=True)
        tokens = [f"t{i}" for i in range(8)]
        slots = [hasher.index(t) for t in tokens]
        assert sorted(slots) == list(range(8))
        assert hasher.collisions == 0
        assert hasher.exhausted

    def test_reverse_lookup(self):
        """Test that slots map back to their tokens."""
        hasher = FeatureHasher(capacity=1024, lookup_table=True)
        slot = hasher.index("create_mutex")
        assert hasher.tokens_for(slot) == ["create_mutex"]
        assert "create_mutex" in hasher
        assert hasher.lookup("create_mutex") == slot
        assert hasher.lookup("unseen") is None

    def test_slot_fixed_for_lifetime(self):
        """Test that a registered token keeps its slot as others arrive."""
        hasher = FeatureHasher(capacity=64, lookup_table=True)
        slot = hasher.index("first")
        for i in range(40):
            hasher.index(f"other{i}")
        assert hasher.index("first") == slot

    def test_exhaustion_collides_at_home_slot(self, malheur_log):
        """Test that a full table shares slots instead of failing."""
        hasher = FeatureHasher(capacity=2, lookup_table=True)
        hasher.index("a")
        hasher.index("b")
        slot = hasher.index("c")

        assert slot == hasher.digest("c") % 2
        assert "c" in hasher.tokens_for(slot)
        assert hasher.collisions == 1
        assert len(hasher) == 3
        assert any("exhausted" in r.getMessage() for r in malheur_log.records)

    def test_exhaustion_warned_once(self, malheur_log):
        """Test that exhaustion is reported a single time."""
        hasher = FeatureHasher(capacity=1, lookup_table=True)
        for t in ("a", "b", "c", "d"):
            hasher.index(t)
        warnings = [r for r in malheur_log.records if "exhausted" in r.getMessage()]
        assert len(warnings) == 1
        assert hasher.collisions == 3

    def test_stats_and_clear(self):
        """Test table statistics and reset."""
        hasher = FeatureHasher(capacity=16, lookup_table=True)
        hasher.register(["x", "y", "x"])
        stats = hasher.get_stats()
        assert stats["tokens"] == 2
        assert stats["slots"] == 2
        assert stats["collisions"] == 0

        hasher.clear()
        assert len(hasher) == 0
        assert hasher.get_stats()["slots"] == 0

    def test_concurrent_registration(self):
        """Test that threads agree on the slot of every token."""
        hasher = FeatureHasher(capacity=1 << 12, lookup_table=True)
        tokens = [f"tok{i % 100}" for i in range(2000)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            slots = list(pool.map(hasher.index, tokens))

        mapping = {}
        for token, slot in zip(tokens, slots):
            assert mapping.setdefault(token, slot) == slot
        assert len(hasher) == 100
        assert len(set(mapping.values())) == 100
