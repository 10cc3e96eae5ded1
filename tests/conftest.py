"""Pytest configuration and fixtures for shardcache testing.

Fixtures build in-memory shard nodes, an in-memory invalidation hub, and a
fleet of MultiLevelCache instances standing in for separate processes. All
fleets are shut down after each test so no delivery loops or refresh tasks
outlive it.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from loguru import logger

from shardcache.core.config import ShardCacheSettings
from shardcache.core.coordinator import MultiLevelCache
from shardcache.core.invalidation_bus import MemoryInvalidationHub
from shardcache.core.shard_router import ShardRouter
from shardcache.core.shard_store import MemoryShardCluster
from shardcache.datastructures.cache_records import NOT_FOUND

SHARD_NODES = ("shard-a", "shard-b", "shard-c")
CLOCK_START = 1_700_000_000.0


class FakeClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, start: float = CLOCK_START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingLoader:
    """Loader that counts calls and can be slowed down or made to fail."""

    def __init__(
        self,
        values: dict[bytes, Any] | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.values = values if values is not None else {}
        self.delay = delay
        self.error = error
        self.calls = 0
        self.keys: list[bytes] = []

    async def __call__(self, key: bytes) -> Any:
        self.calls += 1
        self.keys.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.values.get(key, NOT_FOUND)


class CacheFleet:
    """Several simulated processes sharing shard nodes and an invalidation hub."""

    def __init__(
        self,
        cluster: MemoryShardCluster,
        hub: MemoryInvalidationHub,
        clock: Callable[[], float],
    ) -> None:
        self.cluster = cluster
        self.hub = hub
        self.clock = clock
        self.caches: list[MultiLevelCache] = []

    def spawn(
        self,
        process_id: str,
        *,
        loader: Callable[[bytes], Any] | None = None,
        **overrides: Any,
    ) -> MultiLevelCache:
        # Early refresh is random; tests that exercise it opt back in.
        overrides.setdefault("stampede", {"early_refresh_enabled": False})
        settings = ShardCacheSettings(process_id=process_id, **overrides)
        cache = MultiLevelCache(
            router=ShardRouter(
                self.cluster.nodes,
                virtual_nodes=settings.router.virtual_nodes,
                clock=self.clock,
            ),
            shard_transport=self.cluster,
            invalidation_transport=self.hub,
            settings=settings,
            loader=loader,
            clock=self.clock,
        )
        self.caches.append(cache)
        return cache

    async def start_all(self) -> None:
        for cache in self.caches:
            await cache.start()

    async def settle(self) -> None:
        """Wait until every delivered invalidation has been applied."""
        for cache in self.caches:
            await cache.wait_idle()

    async def shutdown(self) -> None:
        for cache in self.caches:
            try:
                await cache.shutdown()
            except Exception as e:
                logger.warning(f"Error shutting down {cache.process_id}: {e}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster(clock: FakeClock) -> MemoryShardCluster:
    return MemoryShardCluster(SHARD_NODES, clock=clock)


@pytest.fixture
def hub() -> MemoryInvalidationHub:
    return MemoryInvalidationHub()


@pytest.fixture
def router(cluster: MemoryShardCluster, clock: FakeClock) -> ShardRouter:
    return ShardRouter(cluster.nodes, clock=clock)


@pytest_asyncio.fixture
async def fleet(
    cluster: MemoryShardCluster, hub: MemoryInvalidationHub, clock: FakeClock
) -> AsyncGenerator[CacheFleet, None]:
    """A fleet on the fake clock; remember to call start_all() after spawning."""
    cache_fleet = CacheFleet(cluster, hub, clock)
    yield cache_fleet
    await cache_fleet.shutdown()
