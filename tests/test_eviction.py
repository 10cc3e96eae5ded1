"""Tests for local-tier eviction strategies."""

import pytest

from shardcache.core.eviction import (
    EvictionPolicy,
    LFUStrategy,
    LRUStrategy,
    SegmentedLRUStrategy,
    TTLStrategy,
    create_strategy,
)


class TestLRUStrategy:
    """Test least-recently-used ordering."""

    def test_evicts_oldest_insert(self):
        strategy = LRUStrategy()
        for key in (b"a", b"b", b"c"):
            strategy.on_insert(key)
        assert strategy.eviction_candidate() == b"a"

    def test_access_refreshes_recency(self):
        strategy = LRUStrategy()
        for key in (b"a", b"b", b"c"):
            strategy.on_insert(key)
        strategy.on_access(b"a")
        assert strategy.eviction_candidate() == b"b"

    def test_remove_and_clear(self):
        strategy = LRUStrategy()
        strategy.on_insert(b"a")
        strategy.on_insert(b"b")
        strategy.on_remove(b"a")
        assert strategy.eviction_candidate() == b"b"
        strategy.clear()
        assert strategy.eviction_candidate() is None


class TestLFUStrategy:
    """Test least-frequently-used ordering."""

    def test_evicts_least_frequent(self):
        strategy = LFUStrategy()
        for key in (b"a", b"b", b"c"):
            strategy.on_insert(key)
        strategy.on_access(b"a")
        strategy.on_access(b"a")
        strategy.on_access(b"c")
        assert strategy.eviction_candidate() == b"b"
        assert strategy.frequency(b"a") == 3

    def test_ties_fall_back_to_oldest(self):
        strategy = LFUStrategy()
        strategy.on_insert(b"a")
        strategy.on_insert(b"b")
        assert strategy.eviction_candidate() == b"a"

    def test_minimum_tracks_removals(self):
        strategy = LFUStrategy()
        strategy.on_insert(b"a")
        strategy.on_insert(b"b")
        strategy.on_access(b"b")
        strategy.on_remove(b"a")
        assert strategy.eviction_candidate() == b"b"
        strategy.on_remove(b"b")
        assert strategy.eviction_candidate() is None


class TestTTLStrategy:
    """Test soonest-expiry ordering."""

    def test_evicts_soonest_expiry(self):
        strategy = TTLStrategy()
        strategy.on_insert(b"late", 300.0)
        strategy.on_insert(b"soon", 10.0)
        strategy.on_insert(b"never")
        assert strategy.eviction_candidate() == b"soon"

    def test_reinsert_supersedes_old_heap_item(self):
        strategy = TTLStrategy()
        strategy.on_insert(b"a", 10.0)
        strategy.on_insert(b"b", 20.0)
        strategy.on_insert(b"a", 30.0)
        assert strategy.eviction_candidate() == b"b"

    def test_removed_keys_are_skipped(self):
        strategy = TTLStrategy()
        strategy.on_insert(b"a", 10.0)
        strategy.on_insert(b"b", 20.0)
        strategy.on_remove(b"a")
        assert strategy.eviction_candidate() == b"b"

    def test_superseded_items_are_compacted(self):
        strategy = TTLStrategy()
        for i in range(500):
            strategy.on_insert(b"hot", float(i))
        strategy.on_insert(b"cold", 1000.0)
        assert len(strategy._heap) <= 2 * len(strategy._live) + 1
        assert strategy.eviction_candidate() == b"hot"

    def test_compaction_keeps_expiry_order(self):
        strategy = TTLStrategy()
        for i in range(20):
            strategy.on_insert(f"k{i}".encode(), float(100 - i))
        for i in range(15):
            strategy.on_remove(f"k{i}".encode())
        assert len(strategy._heap) <= 2 * len(strategy._live) + 1
        assert strategy.eviction_candidate() == b"k19"


class TestSegmentedLRUStrategy:
    """Test S4LRU promotion, demotion and scan resistance."""

    def test_new_keys_enter_lowest_segment(self):
        strategy = SegmentedLRUStrategy(total_capacity=8, num_segments=4)
        strategy.on_insert(b"a")
        assert strategy.segment_sizes() == [1, 0, 0, 0]

    def test_hits_promote_one_segment(self):
        strategy = SegmentedLRUStrategy(total_capacity=8, num_segments=4)
        strategy.on_insert(b"a")
        strategy.on_access(b"a")
        strategy.on_access(b"a")
        assert strategy.key_to_segment[b"a"] == 2

    def test_overflow_demotes_least_recent(self):
        strategy = SegmentedLRUStrategy(total_capacity=4, num_segments=4)
        for key in (b"a", b"b"):
            strategy.on_insert(key)
            strategy.on_access(key)
        # Segment 1 holds one key; "a" is demoted back to segment 0.
        assert strategy.key_to_segment[b"b"] == 1
        assert strategy.key_to_segment[b"a"] == 0

    def test_scan_does_not_evict_hot_key(self):
        strategy = SegmentedLRUStrategy(total_capacity=8, num_segments=4)
        strategy.on_insert(b"hot")
        strategy.on_access(b"hot")
        for i in range(5):
            strategy.on_insert(f"scan:{i}".encode())
        assert strategy.eviction_candidate() == b"scan:0"

    def test_rejects_zero_segments(self):
        with pytest.raises(ValueError):
            SegmentedLRUStrategy(total_capacity=8, num_segments=0)


class TestCreateStrategy:
    """Test strategy construction from policy names."""

    @pytest.mark.parametrize(
        ("policy", "expected"),
        [
            ("lru", LRUStrategy),
            ("lfu", LFUStrategy),
            ("ttl", TTLStrategy),
            (EvictionPolicy.S4LRU, SegmentedLRUStrategy),
        ],
    )
    def test_policy_names(self, policy, expected):
        assert isinstance(create_strategy(policy, capacity=16), expected)

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            create_strategy("random")
