"""
Multi-level cache coordinator.

`MultiLevelCache` is the only surface callers use. A read goes

    L1 (process-local) -> L2 (shared, sharded) -> stampede guard -> loader

and every step is bounded by the caller's deadline. When the cache cannot
answer in time, or the shared tier is unreachable, the read degrades to a
direct loader call so the cache never makes the system less available than
having no cache at all.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any, Literal

import ulid
from loguru import logger

from shardcache.datastructures.cache_records import (
    NEGATIVE_MARKER,
    NOT_FOUND,
    CacheEntry,
    InvalidationEvent,
    NotFound,
    StoredValue,
    as_key_bytes,
    key_repr,
)
from shardcache.datastructures.shard_map import ShardMap
from shardcache.datastructures.type_aliases import (
    CacheKeyBytes,
    CacheKeyInput,
    DurationSeconds,
    EncodedValue,
    Timestamp,
)

from .config import GapPolicy, ShardCacheSettings
from .deadline import Deadline
from .errors import (
    DeadlineExceeded,
    LoaderError,
    StaleInvalidation,
    TransportError,
)
from .eviction import create_strategy
from .invalidation_bus import InvalidationBus, InvalidationTransport, SubscriptionHandle
from .local_tier import LocalTier
from .serialization import JsonSerializer, Serializer
from .shard_router import ShardRouter
from .shard_store import ShardTransport
from .shared_tier import SharedTierClient
from .stampede import EncodedLoader, StampedeGuard
from .statistics import CacheStats, CoordinatorStatistics
from .task_manager import ManagedObject

type Loader = Callable[[CacheKeyBytes], Awaitable[Any]]
type DeadlineInput = DurationSeconds | Deadline | None
type MembershipAction = Literal["add", "remove"]


class MultiLevelCache(ManagedObject):
    """Read-through cache over a process-local tier and a sharded shared tier."""

    def __init__(
        self,
        *,
        router: ShardRouter,
        shard_transport: ShardTransport,
        invalidation_transport: InvalidationTransport | None = None,
        settings: ShardCacheSettings | None = None,
        loader: Loader | None = None,
        serializer: Serializer | None = None,
        clock: Callable[[], Timestamp] = time.time,
    ) -> None:
        self.settings = settings or ShardCacheSettings()
        self.process_id = self.settings.process_id or f"proc-{ulid.new()}"
        super().__init__(name=f"MultiLevelCache-{self.process_id}")
        self.router = router
        self.loader = loader
        self.serializer: Serializer = serializer or JsonSerializer()
        self.clock = clock
        self.statistics = CoordinatorStatistics()

        local = self.settings.local_tier
        self.local = LocalTier(
            max_entries=local.max_entries,
            max_bytes=local.max_bytes,
            ttl=local.ttl,
            strategy=create_strategy(
                local.eviction_policy, local.max_entries, local.s4lru_segments
            ),
            version_memory=local.version_memory,
            clock=clock,
        )

        self.bus: InvalidationBus | None = None
        if invalidation_transport is not None and self.settings.invalidation.enabled:
            self.bus = InvalidationBus(
                invalidation_transport,
                self.process_id,
                queue_size=self.settings.invalidation.queue_size,
            )

        self.shared = SharedTierClient(
            router,
            shard_transport,
            self.bus,
            self.settings.shared_tier,
            process_id=self.process_id,
            clock=clock,
        )
        self.guard = StampedeGuard(
            self.shared,
            self.settings.stampede,
            process_id=self.process_id,
            clock=clock,
        )
        self._subscription: SubscriptionHandle | None = None

    @classmethod
    def from_settings(
        cls,
        settings: ShardCacheSettings,
        shard_transport: ShardTransport,
        invalidation_transport: InvalidationTransport | None = None,
        *,
        loader: Loader | None = None,
        clock: Callable[[], Timestamp] = time.time,
    ) -> MultiLevelCache:
        """Build a cache whose router starts from `settings.router.members`."""
        router = ShardRouter(
            settings.router.members,
            virtual_nodes=settings.router.virtual_nodes,
            degraded_cooldown=settings.router.degraded_cooldown,
            clock=clock,
        )
        return cls(
            router=router,
            shard_transport=shard_transport,
            invalidation_transport=invalidation_transport,
            settings=settings,
            loader=loader,
            clock=clock,
        )

    async def start(self) -> None:
        """Subscribe the local tier to invalidations."""
        if self.bus is None or self._subscription is not None:
            return
        await self.bus.start()
        self._subscription = self.bus.subscribe(
            self._on_invalidation, on_gap=self._on_gap
        )
        logger.info(f"Cache {self.process_id} started")

    async def shutdown(self) -> None:
        """Unsubscribe and cancel background refreshes."""
        if self.bus is not None:
            if self._subscription is not None:
                self.bus.unsubscribe(self._subscription)
                self._subscription = None
            await self.bus.stop()
        await self.guard.shutdown()
        await super().shutdown()
        logger.info(f"Cache {self.process_id} stopped")

    async def __aenter__(self) -> MultiLevelCache:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    def _deadline(self, deadline: DeadlineInput) -> Deadline:
        if isinstance(deadline, Deadline):
            return deadline
        seconds = self.settings.request_timeout if deadline is None else deadline
        return Deadline.in_(seconds)

    def _encoding_loader(self, loader: Loader) -> EncodedLoader:
        async def load(key: CacheKeyBytes) -> EncodedValue | NotFound:
            value = await loader(key)
            if value is NOT_FOUND:
                return NOT_FOUND
            return self.serializer.serialize(value)

        return load

    def _decode(self, value: StoredValue) -> Any:
        if value is NEGATIVE_MARKER or value is NOT_FOUND:
            return NOT_FOUND
        return self.serializer.deserialize(value)

    async def get(
        self,
        key: CacheKeyInput,
        loader: Loader | None = None,
        *,
        deadline: DeadlineInput = None,
    ) -> Any:
        """Return the value for `key`, or NOT_FOUND when it does not exist.

        `loader` (or the cache's default loader) is called on a miss; without
        one, a miss returns NOT_FOUND. Loader failures raise LoaderError.
        """
        value, _entry = await self._read(key, loader, deadline)
        return value

    async def get_entry(
        self,
        key: CacheKeyInput,
        loader: Loader | None = None,
        *,
        deadline: DeadlineInput = None,
    ) -> CacheEntry | None:
        """Like `get`, but returns the versioned entry that served the read.

        None means the value was not cached (or the key has no value and no
        loader was given).
        """
        _value, entry = await self._read(key, loader, deadline)
        return entry

    async def _read(
        self, key: CacheKeyInput, loader: Loader | None, deadline: DeadlineInput
    ) -> tuple[Any, CacheEntry | None]:
        key_bytes = as_key_bytes(key)
        effective_loader = loader or self.loader
        limit = self._deadline(deadline)
        self.statistics.requests += 1

        entry, found = self.local.get(key_bytes)
        if found:
            assert entry is not None
            self.statistics.l1_hits += 1
            return self._decode(entry.value), entry

        try:
            value, entry = await self._read_shared(key_bytes, effective_loader, limit)
        except (TransportError, DeadlineExceeded) as e:
            return await self._fallback(key_bytes, effective_loader, e), None
        return self._decode(value), entry

    async def _read_shared(
        self, key: CacheKeyBytes, loader: Loader | None, deadline: Deadline
    ) -> tuple[StoredValue, CacheEntry | None]:
        observed = self.local.observed_version(key)
        entry, found = await self.shared.get(key, deadline=deadline)
        if found:
            assert entry is not None
            if observed is None or observed.admits(entry.version):
                self.statistics.l2_hits += 1
                self.local.put(entry)
                if loader is not None and self.guard.should_refresh_early(entry):
                    self.guard.schedule_refresh(
                        key,
                        self._encoding_loader(loader),
                        observed=self.local.observed_version(key),
                    )
                return entry.value, entry
            # Older than what this process already served: treat as a miss.
            self.statistics.stale_l2_reads += 1
            logger.debug(
                f"Ignoring L2 {key_repr(key)} v{entry.version}; "
                f"observed v{observed.version}"
            )

        self.statistics.misses += 1
        if loader is None:
            return NOT_FOUND, None

        outcome = await self.guard.load(
            key, self._encoding_loader(loader), deadline, observed=observed
        )
        if outcome.entry is not None:
            self.local.put(outcome.entry)
        return outcome.value, outcome.entry

    async def _fallback(
        self,
        key: CacheKeyBytes,
        loader: Loader | None,
        error: TransportError | DeadlineExceeded,
    ) -> Any:
        stage = error.stage if isinstance(error, DeadlineExceeded) else "shared tier"
        if not self.settings.degrade_to_loader or loader is None:
            if isinstance(error, DeadlineExceeded):
                raise error
            raise DeadlineExceeded(key, stage) from error

        self.statistics.fallback_loads += 1
        logger.warning(
            f"Cache unavailable for {key_repr(key)} ({stage}: {error}); "
            "calling loader directly"
        )
        try:
            return await loader(key)
        except Exception as e:
            raise LoaderError(key, str(e) or type(e).__name__) from e

    async def delete(
        self, key: CacheKeyInput, *, deadline: DeadlineInput = None
    ) -> InvalidationEvent:
        """Delete-on-write: call after changing the upstream value of `key`.

        Transport errors propagate; a silently lost delete would keep serving
        the old value until its TTL.
        """
        key_bytes = as_key_bytes(key)
        self.statistics.deletes += 1
        self.local.evict(key_bytes)
        event = await self.shared.delete(key_bytes, deadline=self._deadline(deadline))
        self.local.observe(key_bytes, event.source_version, deleted=True)
        # A concurrent read may have refilled L1 while the delete was in flight.
        self.local.evict(key_bytes)
        return event

    async def invalidate(
        self, key: CacheKeyInput, *, deadline: DeadlineInput = None
    ) -> InvalidationEvent:
        """Operator override: drop `key` everywhere."""
        logger.info(f"Manual invalidation of {key_repr(as_key_bytes(key))}")
        return await self.delete(key, deadline=deadline)

    def shard_membership(self, action: MembershipAction, node_id: str) -> ShardMap:
        """Add or remove a physical shard node; returns the new map snapshot."""
        match action:
            case "add":
                return self.router.add_member(node_id)
            case "remove":
                return self.router.remove_member(node_id)
            case _:
                raise ValueError(f"Unknown membership action: {action!r}")

    def cache_stats(self) -> CacheStats:
        local = self.local.statistics
        guard = self.guard.statistics
        local_lookups = local.hits + local.misses
        return CacheStats(
            process_id=self.process_id,
            hit_rate=self.statistics.hit_rate(),
            l1_hit_rate=local.hits / local_lookups if local_lookups else 0.0,
            eviction_rate=local.eviction_rate(),
            lease_contention=guard.lease_contention,
            requests=self.statistics.requests,
            l1_hits=self.statistics.l1_hits,
            l2_hits=self.statistics.l2_hits,
            misses=self.statistics.misses,
            coalesced_requests=guard.coalesced,
            loads=guard.loads,
            load_failures=guard.load_failures,
            fallback_loads=self.statistics.fallback_loads,
            stale_l2_reads=self.statistics.stale_l2_reads,
            lease_timeouts=guard.lease_timeouts,
            stale_leases=guard.stale_leases,
            early_refreshes=guard.early_refreshes,
            evictions=local.evictions,
            expirations=local.expirations,
            invalidations_applied=local.invalidations_applied,
            stale_invalidations=local.stale_invalidations,
            invalidation_gaps=0 if self.bus is None else self.bus.statistics.gaps,
            l1_entries=len(self.local),
            l1_bytes=self.local.memory_bytes,
            shard_map_version=self.router.current.version,
            degraded_nodes=tuple(sorted(self.router.degraded_nodes())),
        )

    async def wait_idle(self) -> None:
        """Wait for background refreshes and pending invalidations."""
        await self.guard.wait_idle()
        if self.bus is not None:
            await self.bus.flush()

    def _on_invalidation(self, event: InvalidationEvent) -> None:
        try:
            evicted = self.local.apply_invalidation(event)
        except StaleInvalidation as e:
            logger.debug(f"Discarded invalidation: {e}")
            return
        if evicted:
            logger.debug(
                f"Evicted {key_repr(event.key)} for {event.kind.value} "
                f"v{event.source_version} from {event.origin}"
            )

    def _on_gap(self) -> None:
        policy = self.settings.local_tier.gap_policy
        if policy is GapPolicy.CLEAR:
            dropped = self.local.clear()
            logger.info(f"Invalidation gap: cleared {dropped} local entries")
        else:
            shortened = self.local.shorten_all(self.settings.local_tier.gap_ttl)
            logger.info(
                f"Invalidation gap: capped {shortened} local entries at "
                f"{self.settings.local_tier.gap_ttl:.1f}s"
            )
