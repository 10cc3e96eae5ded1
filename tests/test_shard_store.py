"""Tests for the in-memory shard node primitives and failure injection."""

import pytest

from shardcache.core.errors import ShardUnavailable
from shardcache.core.shard_store import MemoryShardCluster, MemoryShardStore


@pytest.fixture
def store(clock) -> MemoryShardStore:
    return MemoryShardStore(node_id="shard-a", clock=clock)


class TestMemoryShardStore:
    """Test atomic primitives of a single node."""

    @pytest.mark.asyncio
    async def test_set_get_with_ttl(self, store, clock):
        await store.set(b"k", b"v", 10.0)
        assert await store.get(b"k") == b"v"
        clock.advance(10.0)
        assert await store.get(b"k") is None

    @pytest.mark.asyncio
    async def test_set_if_absent_is_exclusive(self, store):
        assert await store.set_if_absent(b"lease", b"1", 10.0, owner="p1")
        assert not await store.set_if_absent(b"lease", b"2", 10.0, owner="p2")
        assert await store.get(b"lease") == b"1"
        assert store.statistics.conditional_create_conflicts == 1

    @pytest.mark.asyncio
    async def test_set_if_absent_after_expiry(self, store, clock):
        await store.set_if_absent(b"lease", b"1", 1.0, owner="p1")
        clock.advance(1.0)
        assert await store.set_if_absent(b"lease", b"2", 1.0, owner="p2")

    @pytest.mark.asyncio
    async def test_delete_if_owner(self, store):
        await store.set_if_absent(b"lease", b"1", 10.0, owner="p1")
        assert not await store.delete_if_owner(b"lease", "p2")
        assert await store.delete_if_owner(b"lease", "p1")
        assert await store.get(b"lease") is None
        assert not await store.delete_if_owner(b"lease", "p1")

    @pytest.mark.asyncio
    async def test_set_versioned_refuses_older_or_equal(self, store):
        assert await store.set_versioned(b"e", b"v2", 10.0, version=2)
        assert not await store.set_versioned(b"e", b"v1", 10.0, version=1)
        assert not await store.set_versioned(b"e", b"v2b", 10.0, version=2)
        assert await store.set_versioned(b"e", b"v3", 10.0, version=3)
        assert await store.get(b"e") == b"v3"
        assert store.statistics.versioned_write_rejections == 2

    @pytest.mark.asyncio
    async def test_increment_with_floor(self, store):
        assert await store.increment(b"c") == 1
        assert await store.increment(b"c") == 2
        assert await store.increment(b"c", at_least=10) == 10
        assert await store.increment(b"c", at_least=3) == 11
        assert await store.read_counter(b"c") == 11
        assert await store.read_counter(b"other") == 0

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.set(b"k", b"v", 10.0)
        assert await store.delete(b"k")
        assert not await store.delete(b"k")

    @pytest.mark.asyncio
    async def test_unavailable_node_raises(self, store):
        store.available = False
        with pytest.raises(ShardUnavailable) as exc_info:
            await store.get(b"k")
        assert exc_info.value.node_id == "shard-a"
        assert store.statistics.failed_requests == 1

    @pytest.mark.asyncio
    async def test_record_count_skips_expired(self, store, clock):
        await store.set(b"short", b"v", 1.0)
        await store.set(b"long", b"v", 60.0)
        clock.advance(2.0)
        assert store.record_count() == 1


class TestMemoryShardCluster:
    """Test the shared set of simulated nodes."""

    def test_store_for_known_and_unknown(self, cluster):
        assert cluster.store_for("shard-a").node_id == "shard-a"
        with pytest.raises(ShardUnavailable):
            cluster.store_for("shard-z")

    def test_add_and_remove_nodes(self, cluster):
        store = cluster.add_node("shard-d")
        assert cluster.add_node("shard-d") is store
        cluster.remove_node("shard-d")
        assert "shard-d" not in cluster.nodes

    @pytest.mark.asyncio
    async def test_availability_switches(self, cluster):
        cluster.set_available("shard-a", False)
        with pytest.raises(ShardUnavailable):
            await cluster.nodes["shard-a"].get(b"k")
        cluster.set_all_available(True)
        assert await cluster.nodes["shard-a"].get(b"k") is None
