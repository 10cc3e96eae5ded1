"""
Tests for the process-local tier (L1).

Covers TTL bounds, capacity and byte budgets, monotonic version admission,
and how invalidation events are applied.
"""

import pytest

from shardcache.core.errors import StaleInvalidation
from shardcache.core.eviction import LFUStrategy, TTLStrategy
from shardcache.core.local_tier import LocalTier, ObservedVersion
from shardcache.datastructures.cache_records import (
    CacheEntry,
    InvalidationEvent,
    InvalidationKind,
)


def make_entry(clock, key=b"user:42", value=b'{"id":42}', version=1, ttl=300.0):
    return CacheEntry.create(key, value, ttl, version, now=clock())


@pytest.fixture
def tier(clock) -> LocalTier:
    return LocalTier(max_entries=3, ttl=5.0, clock=clock, accurate_sizing=False)


class TestLocalTierBasics:
    """Test get/put and statistics."""

    def test_miss_then_hit(self, tier, clock):
        assert tier.get(b"user:42") == (None, False)
        entry = make_entry(clock)
        assert tier.put(entry)
        assert tier.get(b"user:42") == (entry, True)
        assert tier.statistics.hits == 1
        assert tier.statistics.misses == 1
        assert tier.statistics.hit_rate() == 0.5

    def test_requires_a_bound(self):
        with pytest.raises(ValueError):
            LocalTier(max_entries=None, max_bytes=None)

    def test_contains_respects_expiry(self, tier, clock):
        tier.put(make_entry(clock))
        assert b"user:42" in tier
        clock.advance(6.0)
        assert b"user:42" not in tier


class TestLocalTTL:
    """Test that local copies never outlive their local TTL."""

    def test_entry_expires_after_local_ttl(self, tier, clock):
        tier.put(make_entry(clock, ttl=300.0))
        clock.advance(4.9)
        assert tier.get(b"user:42")[1]
        clock.advance(0.2)
        assert tier.get(b"user:42") == (None, False)
        assert tier.statistics.expirations == 1

    def test_shared_expiry_caps_local_expiry(self, tier, clock):
        tier.put(make_entry(clock, ttl=1.0))
        clock.advance(1.5)
        assert tier.get(b"user:42") == (None, False)

    def test_put_ttl_cannot_exceed_tier_ttl(self, tier, clock):
        tier.put(make_entry(clock), ttl=60.0)
        clock.advance(5.5)
        assert tier.get(b"user:42") == (None, False)

    def test_shorten_all_caps_remaining_lifetime(self, tier, clock):
        tier.put(make_entry(clock, key=b"a"))
        tier.put(make_entry(clock, key=b"b"))
        assert tier.shorten_all(1.0) == 2
        clock.advance(1.1)
        assert tier.purge_expired() == 2
        assert len(tier) == 0


class TestCapacity:
    """Test entry-count and byte budgets."""

    def test_lru_eviction_at_capacity(self, tier, clock):
        for key in (b"a", b"b", b"c"):
            tier.put(make_entry(clock, key=key))
        tier.get(b"a")
        tier.put(make_entry(clock, key=b"d"))
        assert b"b" not in tier
        assert b"a" in tier
        assert tier.statistics.evictions == 1
        assert tier.statistics.eviction_rate() == pytest.approx(0.25)

    def test_custom_strategy(self, clock):
        tier = LocalTier(
            max_entries=2, strategy=LFUStrategy(), clock=clock, accurate_sizing=False
        )
        tier.put(make_entry(clock, key=b"a"))
        tier.put(make_entry(clock, key=b"b"))
        tier.get(b"a")
        tier.put(make_entry(clock, key=b"c"))
        assert b"a" in tier
        assert b"b" not in tier

    def test_byte_budget(self, clock):
        tier = LocalTier(
            max_entries=None, max_bytes=40, clock=clock, accurate_sizing=False
        )
        tier.put(make_entry(clock, key=b"a", value=b"x" * 15))
        tier.put(make_entry(clock, key=b"b", value=b"y" * 15))
        assert len(tier) == 2
        tier.put(make_entry(clock, key=b"c", value=b"z" * 15))
        assert b"a" not in tier
        assert tier.memory_bytes <= 40

    def test_reputting_a_key_keeps_ttl_bookkeeping_bounded(self, clock):
        strategy = TTLStrategy()
        tier = LocalTier(
            max_entries=10, strategy=strategy, clock=clock, accurate_sizing=False
        )
        for _ in range(1000):
            assert tier.put(make_entry(clock))
        assert len(tier) == 1
        assert len(strategy._heap) <= 3

    def test_oversize_entry_refused(self, clock):
        tier = LocalTier(max_bytes=10, clock=clock, accurate_sizing=False)
        assert not tier.put(make_entry(clock, value=b"x" * 64))
        assert tier.statistics.rejected_puts == 1

    def test_pympler_sizing(self, clock):
        tier = LocalTier(max_entries=10, clock=clock)
        tier.put(make_entry(clock, value=b"x" * 1024))
        assert tier.memory_bytes >= 1024

    def test_clear_keeps_observed_versions(self, tier, clock):
        tier.put(make_entry(clock, version=4))
        assert tier.clear() == 1
        assert tier.observed_version(b"user:42") == ObservedVersion(4)


class TestMonotonicReads:
    """Test that a process never goes back to an older version."""

    def test_older_version_refused(self, tier, clock):
        assert tier.put(make_entry(clock, version=2))
        tier.evict(b"user:42")
        assert not tier.put(make_entry(clock, version=1))
        assert tier.statistics.rejected_puts == 1

    def test_same_version_admitted_until_deleted(self, tier, clock):
        assert tier.put(make_entry(clock, version=2))
        assert tier.put(make_entry(clock, version=2))
        tier.observe(b"user:42", 2, deleted=True)
        assert not tier.put(make_entry(clock, version=2))
        assert tier.put(make_entry(clock, version=3))

    def test_observed_version_admits(self):
        assert ObservedVersion(3).admits(3)
        assert not ObservedVersion(3).admits(2)
        assert not ObservedVersion(3, deleted=True).admits(3)
        assert ObservedVersion(3, deleted=True).admits(4)

    def test_version_memory_is_bounded(self, clock):
        tier = LocalTier(max_entries=10, version_memory=2, clock=clock)
        for key in (b"a", b"b", b"c"):
            tier.observe(key, 1)
        assert tier.observed_version(b"a") is None
        assert tier.observed_version(b"c") == ObservedVersion(1)


class TestApplyInvalidation:
    """Test applying bus events to local copies."""

    def test_delete_evicts_same_version(self, tier, clock):
        tier.put(make_entry(clock, version=1))
        event = InvalidationEvent(key=b"user:42", source_version=1)
        assert tier.apply_invalidation(event)
        assert b"user:42" not in tier
        assert tier.observed_version(b"user:42") == ObservedVersion(1, deleted=True)

    def test_set_keeps_same_version(self, tier, clock):
        tier.put(make_entry(clock, version=2))
        event = InvalidationEvent(
            key=b"user:42", source_version=2, kind=InvalidationKind.SET
        )
        assert not tier.apply_invalidation(event)
        assert b"user:42" in tier

    def test_set_evicts_older_copy(self, tier, clock):
        tier.put(make_entry(clock, version=1))
        event = InvalidationEvent(
            key=b"user:42", source_version=2, kind=InvalidationKind.SET
        )
        assert tier.apply_invalidation(event)
        assert tier.statistics.invalidations_applied == 1

    def test_stale_event_raises(self, tier, clock):
        tier.put(make_entry(clock, version=3))
        event = InvalidationEvent(key=b"user:42", source_version=2)
        with pytest.raises(StaleInvalidation) as exc_info:
            tier.apply_invalidation(event)
        assert exc_info.value.observed_version == 3
        assert b"user:42" in tier
        assert tier.statistics.stale_invalidations == 1

    def test_event_for_unknown_key_is_remembered(self, tier, clock):
        event = InvalidationEvent(key=b"user:7", source_version=5)
        assert not tier.apply_invalidation(event)
        assert not tier.put(make_entry(clock, key=b"user:7", version=5))
