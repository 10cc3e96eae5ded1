"""
Shard node storage primitives.

`ShardStore` is the request/response contract the shared tier speaks to a
shard node. Every primitive is atomic at the node: conditional creates and
owner-checked deletes are what make the per-key lease a cross-process lock.
`MemoryShardStore` is the in-process reference node used by tests and
simulations; it supports failure injection.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from loguru import logger

from shardcache.datastructures.type_aliases import (
    CacheVersion,
    DurationSeconds,
    NodeId,
    Timestamp,
)

from .errors import ShardUnavailable


class ShardStore(Protocol):
    """Key/value primitives offered by one shard node."""

    node_id: NodeId

    async def get(self, key: bytes) -> bytes | None: ...

    async def set(self, key: bytes, value: bytes, ttl: DurationSeconds) -> None: ...

    async def set_if_absent(
        self, key: bytes, value: bytes, ttl: DurationSeconds, *, owner: str
    ) -> bool: ...

    async def set_versioned(
        self,
        key: bytes,
        value: bytes,
        ttl: DurationSeconds,
        *,
        version: CacheVersion,
    ) -> bool: ...

    async def delete(self, key: bytes) -> bool: ...

    async def delete_if_owner(self, key: bytes, owner: str) -> bool: ...

    async def increment(self, key: bytes, *, at_least: int = 0) -> int: ...

    async def read_counter(self, key: bytes) -> int: ...


class ShardTransport(Protocol):
    """Resolves a physical node id to the store that serves it."""

    def store_for(self, node_id: NodeId) -> ShardStore: ...


@dataclass(slots=True)
class StoredRecord:
    value: bytes
    expires_at: Timestamp | None
    owner: str | None = None
    version: CacheVersion = 0

    def is_expired(self, now: Timestamp) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(slots=True)
class ShardStoreStatistics:
    gets: int = 0
    writes: int = 0
    conditional_creates: int = 0
    conditional_create_conflicts: int = 0
    versioned_write_rejections: int = 0
    deletes: int = 0
    failed_requests: int = 0


@dataclass(slots=True)
class MemoryShardStore:
    """In-memory shard node with TTLs, conditional writes and failure injection."""

    node_id: NodeId
    available: bool = True
    latency: DurationSeconds = 0.0
    clock: Callable[[], Timestamp] = time.time
    statistics: ShardStoreStatistics = field(default_factory=ShardStoreStatistics)
    _records: dict[bytes, StoredRecord] = field(default_factory=dict)
    _counters: dict[bytes, int] = field(default_factory=dict)

    async def _request(self) -> Timestamp:
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        if not self.available:
            self.statistics.failed_requests += 1
            raise ShardUnavailable(self.node_id)
        return self.clock()

    def _live(self, key: bytes, now: Timestamp) -> StoredRecord | None:
        record = self._records.get(key)
        if record is not None and record.is_expired(now):
            del self._records[key]
            return None
        return record

    async def get(self, key: bytes) -> bytes | None:
        now = await self._request()
        self.statistics.gets += 1
        record = self._live(key, now)
        return None if record is None else record.value

    async def set(self, key: bytes, value: bytes, ttl: DurationSeconds) -> None:
        now = await self._request()
        self.statistics.writes += 1
        self._records[key] = StoredRecord(value=value, expires_at=now + ttl)

    async def set_if_absent(
        self, key: bytes, value: bytes, ttl: DurationSeconds, *, owner: str
    ) -> bool:
        now = await self._request()
        self.statistics.conditional_creates += 1
        if self._live(key, now) is not None:
            self.statistics.conditional_create_conflicts += 1
            return False
        self._records[key] = StoredRecord(
            value=value, expires_at=now + ttl, owner=owner
        )
        return True

    async def set_versioned(
        self,
        key: bytes,
        value: bytes,
        ttl: DurationSeconds,
        *,
        version: CacheVersion,
    ) -> bool:
        now = await self._request()
        current = self._live(key, now)
        if current is not None and current.version >= version:
            self.statistics.versioned_write_rejections += 1
            logger.debug(
                f"[{self.node_id}] refused v{version} write: v{current.version} stored"
            )
            return False
        self.statistics.writes += 1
        self._records[key] = StoredRecord(
            value=value, expires_at=now + ttl, version=version
        )
        return True

    async def delete(self, key: bytes) -> bool:
        now = await self._request()
        self.statistics.deletes += 1
        return self._live(key, now) is not None and self._records.pop(key) is not None

    async def delete_if_owner(self, key: bytes, owner: str) -> bool:
        now = await self._request()
        record = self._live(key, now)
        if record is None or record.owner != owner:
            return False
        self.statistics.deletes += 1
        del self._records[key]
        return True

    async def increment(self, key: bytes, *, at_least: int = 0) -> int:
        await self._request()
        value = max(self._counters.get(key, 0) + 1, at_least)
        self._counters[key] = value
        return value

    async def read_counter(self, key: bytes) -> int:
        await self._request()
        return self._counters.get(key, 0)

    def record_count(self) -> int:
        now = self.clock()
        return sum(1 for record in self._records.values() if not record.is_expired(now))


class MemoryShardCluster:
    """A set of in-memory shard nodes shared by every simulated process."""

    def __init__(
        self,
        node_ids: Iterable[NodeId] = (),
        *,
        clock: Callable[[], Timestamp] = time.time,
    ) -> None:
        self.clock = clock
        self.nodes: dict[NodeId, MemoryShardStore] = {}
        for node_id in node_ids:
            self.add_node(node_id)

    def add_node(self, node_id: NodeId) -> MemoryShardStore:
        store = self.nodes.get(node_id)
        if store is None:
            store = MemoryShardStore(node_id=node_id, clock=self.clock)
            self.nodes[node_id] = store
        return store

    def remove_node(self, node_id: NodeId) -> None:
        self.nodes.pop(node_id, None)

    def store_for(self, node_id: NodeId) -> ShardStore:
        store = self.nodes.get(node_id)
        if store is None:
            raise ShardUnavailable(node_id, "unknown node")
        return store

    def set_available(self, node_id: NodeId, available: bool) -> None:
        self.nodes[node_id].available = available

    def set_all_available(self, available: bool) -> None:
        for store in self.nodes.values():
            store.available = available
