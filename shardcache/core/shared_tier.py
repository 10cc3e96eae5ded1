"""
Client for the shared, sharded cache tier (L2).

Each data key owns a small family of records on the shard it routes to:

- ``e:<key>`` the encoded CacheEntry
- ``l:<key>`` the recompute lease
- ``f:<key>`` a short-lived loader failure
- ``v:<key>`` the entry version counter (bumped by writes)
- ``w:<key>`` the delete epoch (bumped by delete-on-write)

All records of a family route by the data key, so they always live together.
Successful writes and deletes publish an InvalidationEvent on the bus.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from shardcache.datastructures.cache_records import (
    NEGATIVE_MARKER,
    CacheEntry,
    InvalidationEvent,
    InvalidationKind,
    Lease,
    LoadFailure,
    StoredValue,
    key_repr,
)
from shardcache.datastructures.type_aliases import (
    CacheKeyBytes,
    CacheVersion,
    DurationSeconds,
    EncodedValue,
    HolderId,
    NodeId,
    ProcessId,
    Timestamp,
)

from .config import SharedTierSettings
from .deadline import Deadline, RetryPolicy
from .errors import ShardUnavailable, TransportError, TransportTimeoutError
from .invalidation_bus import InvalidationBus
from .serialization import RecordCodec
from .shard_router import ShardRouter
from .shard_store import ShardStore, ShardTransport

ENTRY_PREFIX = b"e:"
LEASE_PREFIX = b"l:"
FAILURE_PREFIX = b"f:"
VERSION_PREFIX = b"v:"
DELETE_EPOCH_PREFIX = b"w:"


@dataclass(slots=True)
class SharedTierStatistics:
    gets: int = 0
    hits: int = 0
    misses: int = 0
    sets: int = 0
    negative_sets: int = 0
    refused_writes: int = 0
    deletes: int = 0
    retries: int = 0
    failovers: int = 0
    timeouts: int = 0
    publish_failures: int = 0
    lease_attempts: int = 0
    leases_acquired: int = 0
    lease_conflicts: int = 0


class SharedTierClient:
    """Routes record operations to shard nodes with retries and failover."""

    def __init__(
        self,
        router: ShardRouter,
        transport: ShardTransport,
        bus: InvalidationBus | None = None,
        settings: SharedTierSettings | None = None,
        *,
        process_id: ProcessId = "-",
        clock: Callable[[], Timestamp] = time.time,
    ) -> None:
        self.router = router
        self.transport = transport
        self.bus = bus
        self.settings = settings or SharedTierSettings()
        self.process_id = process_id
        self.clock = clock
        self.retry = RetryPolicy.from_settings(self.settings)
        self.statistics = SharedTierStatistics()

    async def _call[T](
        self,
        key: CacheKeyBytes,
        operation: str,
        request: Callable[[ShardStore], Awaitable[T]],
        deadline: Deadline | None,
        *,
        pinned: NodeId | None = None,
    ) -> T:
        """Run `request` against the node serving `key`.

        With `pinned`, only that node is tried: ShardUnavailable is raised
        instead of failing over to a secondary owner.
        """
        snapshot = self.router.current
        if snapshot.is_empty():
            raise TransportError("No shard members configured")

        last_error: TransportError | None = None
        for attempt in range(self.retry.max_attempts):
            if deadline is not None and deadline.expired:
                break
            node_id = pinned or self.router.candidates(key, snapshot)[0]
            try:
                store = self.transport.store_for(node_id)
                if deadline is None:
                    result = await request(store)
                else:
                    result = await asyncio.wait_for(
                        request(store), deadline.remaining()
                    )
            except TimeoutError:
                self.statistics.timeouts += 1
                raise TransportTimeoutError(
                    f"{operation} {key_repr(key)} on {node_id} exceeded its deadline"
                ) from None
            except ShardUnavailable as e:
                # Route around the node; a pinned call reports the outage instead.
                self.router.mark_degraded(e.node_id)
                if pinned is not None:
                    raise
                last_error = e
                self.statistics.failovers += 1
                continue
            except TransportError as e:
                last_error = e
                self.statistics.retries += 1
                delay = self.retry.delay_for(attempt)
                if deadline is not None:
                    delay = deadline.cap(delay)
                logger.debug(
                    f"{operation} {key_repr(key)} on {node_id} failed "
                    f"(attempt {attempt + 1}/{self.retry.max_attempts}): {e}"
                )
                await asyncio.sleep(delay)
                continue

            if self.router.is_degraded(node_id):
                self.router.mark_healthy(node_id)
            return result

        if last_error is None:
            self.statistics.timeouts += 1
            raise TransportTimeoutError(
                f"{operation} {key_repr(key)} exceeded its deadline"
            )
        raise last_error

    async def _publish(self, event: InvalidationEvent) -> None:
        if self.bus is None:
            return
        try:
            await self.bus.publish(event)
        except TransportError as e:
            # Local TTLs bound how long other processes serve the old copy.
            self.statistics.publish_failures += 1
            logger.warning(
                f"Invalidation for {key_repr(event.key)} v{event.source_version} "
                f"not published: {e}"
            )

    async def get(
        self, key: CacheKeyBytes, *, deadline: Deadline | None = None
    ) -> tuple[CacheEntry | None, bool]:
        """Return ``(entry, found)`` for `key`."""
        self.statistics.gets += 1
        data = await self._call(
            key, "get", lambda store: store.get(ENTRY_PREFIX + key), deadline
        )
        if data is None:
            self.statistics.misses += 1
            return None, False
        entry = RecordCodec.decode_entry(key, data)
        if entry.is_expired(self.clock()):
            self.statistics.misses += 1
            return None, False
        self.statistics.hits += 1
        return entry, True

    async def _write(
        self,
        key: CacheKeyBytes,
        value: StoredValue,
        ttl: DurationSeconds,
        min_version: CacheVersion,
        deadline: Deadline | None,
    ) -> CacheEntry:
        async def write(store: ShardStore) -> tuple[CacheEntry, bool]:
            version = await store.increment(VERSION_PREFIX + key, at_least=min_version)
            entry = CacheEntry.create(key, value, ttl, version, now=self.clock())
            stored = await store.set_versioned(
                ENTRY_PREFIX + key,
                RecordCodec.encode_entry(entry),
                ttl,
                version=version,
            )
            return entry, stored

        entry, stored = await self._call(key, "set", write, deadline)
        if not stored:
            self.statistics.refused_writes += 1
            logger.debug(
                f"L2 kept a newer copy of {key_repr(key)}; v{entry.version} not stored"
            )
            return entry

        await self._publish(
            InvalidationEvent(
                key=key,
                source_version=entry.version,
                kind=InvalidationKind.SET,
                issued_at=entry.created_at,
            )
        )
        return entry

    async def set(
        self,
        key: CacheKeyBytes,
        value: EncodedValue,
        ttl: DurationSeconds | None = None,
        *,
        min_version: CacheVersion = 0,
        deadline: Deadline | None = None,
    ) -> CacheEntry:
        """Store `value` under a fresh version no lower than `min_version`."""
        self.statistics.sets += 1
        return await self._write(
            key,
            value,
            self.settings.default_ttl if ttl is None else ttl,
            min_version,
            deadline,
        )

    async def set_negative(
        self,
        key: CacheKeyBytes,
        ttl: DurationSeconds | None = None,
        *,
        min_version: CacheVersion = 0,
        deadline: Deadline | None = None,
    ) -> CacheEntry:
        """Record that `key` has no upstream value."""
        self.statistics.negative_sets += 1
        return await self._write(
            key,
            NEGATIVE_MARKER,
            self.settings.negative_ttl if ttl is None else ttl,
            min_version,
            deadline,
        )

    async def delete(
        self, key: CacheKeyBytes, *, deadline: Deadline | None = None
    ) -> InvalidationEvent:
        """Delete-on-write: drop the entry and tell every process.

        The version counter is left alone; the delete epoch moves so leases
        granted before this delete can no longer populate the key.

        The primary owner must take the delete: when it is down this raises
        ShardUnavailable rather than deleting on a secondary, which would
        leave the primary's copy to reappear once it recovers. Copies written
        to secondary owners during an earlier failover are purged best
        effort, and the event carries the highest version any owner reported.
        """

        async def remove(store: ShardStore) -> CacheVersion:
            await store.increment(DELETE_EPOCH_PREFIX + key)
            await store.delete(ENTRY_PREFIX + key)
            return await store.read_counter(VERSION_PREFIX + key)

        owners = self.router.current.preference_list(key)
        if not owners:
            raise TransportError("No shard members configured")

        self.statistics.deletes += 1
        version = await self._call(key, "delete", remove, deadline, pinned=owners[0])
        for node_id in owners[1:]:
            try:
                purged = await self._call(
                    key, "purge", remove, deadline, pinned=node_id
                )
            except TransportError as e:
                logger.debug(f"Skipped purge of {key_repr(key)} on {node_id}: {e}")
                continue
            version = max(version, purged)

        event = InvalidationEvent(
            key=key,
            source_version=version,
            kind=InvalidationKind.DELETE,
            issued_at=self.clock(),
        )
        await self._publish(event)
        return event

    async def current_version(
        self, key: CacheKeyBytes, *, deadline: Deadline | None = None
    ) -> CacheVersion:
        return await self._call(
            key,
            "read version",
            lambda store: store.read_counter(VERSION_PREFIX + key),
            deadline,
        )

    async def delete_epoch(
        self, key: CacheKeyBytes, *, deadline: Deadline | None = None
    ) -> int:
        return await self._call(
            key,
            "read delete epoch",
            lambda store: store.read_counter(DELETE_EPOCH_PREFIX + key),
            deadline,
        )

    async def acquire_lease(
        self,
        key: CacheKeyBytes,
        holder_id: HolderId,
        timeout: DurationSeconds,
        *,
        deadline: Deadline | None = None,
    ) -> Lease | None:
        """Try to become the single recomputer of `key`; None when another holds it."""

        async def acquire(store: ShardStore) -> Lease | None:
            epoch = await store.read_counter(DELETE_EPOCH_PREFIX + key)
            lease = Lease.create(
                key, holder_id, timeout, write_epoch=epoch, now=self.clock()
            )
            won = await store.set_if_absent(
                LEASE_PREFIX + key,
                RecordCodec.encode_lease(lease),
                timeout,
                owner=holder_id,
            )
            return lease if won else None

        self.statistics.lease_attempts += 1
        lease = await self._call(key, "acquire lease", acquire, deadline)
        if lease is None:
            self.statistics.lease_conflicts += 1
        else:
            self.statistics.leases_acquired += 1
        return lease

    async def read_lease(
        self, key: CacheKeyBytes, *, deadline: Deadline | None = None
    ) -> Lease | None:
        data = await self._call(
            key, "read lease", lambda store: store.get(LEASE_PREFIX + key), deadline
        )
        return None if data is None else RecordCodec.decode_lease(key, data)

    async def release_lease(
        self, lease: Lease, *, deadline: Deadline | None = None
    ) -> bool:
        """Delete the lease only if `lease.holder_id` still owns it."""
        return await self._call(
            lease.key,
            "release lease",
            lambda store: store.delete_if_owner(
                LEASE_PREFIX + lease.key, lease.holder_id
            ),
            deadline,
        )

    async def record_failure(
        self,
        key: CacheKeyBytes,
        holder_id: HolderId,
        message: str,
        *,
        deadline: Deadline | None = None,
    ) -> LoadFailure:
        now = self.clock()
        failure = LoadFailure(
            key=key,
            holder_id=holder_id,
            message=message,
            failed_at=now,
            expires_at=now + self.settings.failure_ttl,
        )
        await self._call(
            key,
            "record failure",
            lambda store: store.set(
                FAILURE_PREFIX + key,
                RecordCodec.encode_failure(failure),
                self.settings.failure_ttl,
            ),
            deadline,
        )
        return failure

    async def read_failure(
        self, key: CacheKeyBytes, *, deadline: Deadline | None = None
    ) -> LoadFailure | None:
        data = await self._call(
            key,
            "read failure",
            lambda store: store.get(FAILURE_PREFIX + key),
            deadline,
        )
        return None if data is None else RecordCodec.decode_failure(key, data)

    async def clear_failure(
        self, key: CacheKeyBytes, *, deadline: Deadline | None = None
    ) -> bool:
        return await self._call(
            key,
            "clear failure",
            lambda store: store.delete(FAILURE_PREFIX + key),
            deadline,
        )
