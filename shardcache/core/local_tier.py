"""
Process-local cache tier (L1).

The local tier holds short-lived copies of shared-tier entries. It never calls
the loader, never suspends, and is never the source of truth: every entry
carries a local TTL so a lost invalidation heals within a bounded window.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger
from pympler import asizeof

from shardcache.datastructures.cache_records import (
    CacheEntry,
    InvalidationEvent,
    InvalidationKind,
    key_repr,
)
from shardcache.datastructures.type_aliases import (
    ByteSize,
    CacheKeyBytes,
    CacheVersion,
    DurationSeconds,
    Timestamp,
)

from .errors import StaleInvalidation
from .eviction import EvictionStrategy, LRUStrategy


@dataclass(slots=True)
class LocalEntry:
    """A shared-tier entry copy plus its local bookkeeping."""

    entry: CacheEntry
    local_expires_at: Timestamp
    size_bytes: ByteSize

    def is_expired(self, now: Timestamp) -> bool:
        return now >= self.local_expires_at or self.entry.is_expired(now)


@dataclass(slots=True)
class LocalTierStatistics:
    """Counters for one local tier."""

    hits: int = 0
    misses: int = 0
    inserts: int = 0
    evictions: int = 0
    expirations: int = 0
    invalidations_applied: int = 0
    stale_invalidations: int = 0
    rejected_puts: int = 0

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def eviction_rate(self) -> float:
        """Capacity evictions per insert."""
        return self.evictions / self.inserts if self.inserts > 0 else 0.0


@dataclass(frozen=True, slots=True)
class ObservedVersion:
    """Highest version a process has seen for a key, and whether it was deleted."""

    version: CacheVersion
    deleted: bool = False

    def admits(self, version: CacheVersion) -> bool:
        """Whether an entry at `version` may be served after this observation."""
        if self.deleted:
            return version > self.version
        return version >= self.version


class LocalTier:
    """
    Bounded in-process cache of shared-tier entries.

    Bounds are an entry count, a byte budget (measured with pympler), or both;
    whichever is exceeded first triggers eviction through the configured
    strategy. The tier also remembers the highest version it has observed per
    key so reads stay monotonic and stale invalidations are rejected.
    """

    def __init__(
        self,
        *,
        max_entries: int | None = 10_000,
        max_bytes: ByteSize | None = None,
        ttl: DurationSeconds = 5.0,
        strategy: EvictionStrategy | None = None,
        version_memory: int = 100_000,
        accurate_sizing: bool = True,
        clock: Callable[[], Timestamp] = time.time,
    ) -> None:
        if max_entries is None and max_bytes is None:
            raise ValueError("LocalTier needs max_entries, max_bytes, or both")
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.ttl = ttl
        self.strategy: EvictionStrategy = strategy or LRUStrategy()
        self.version_memory = version_memory
        self.accurate_sizing = accurate_sizing
        self.clock = clock
        self.statistics = LocalTierStatistics()
        self._entries: dict[CacheKeyBytes, LocalEntry] = {}
        self._observed: OrderedDict[CacheKeyBytes, ObservedVersion] = OrderedDict()
        self._memory_bytes: ByteSize = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKeyBytes) -> bool:
        local = self._entries.get(key)
        return local is not None and not local.is_expired(self.clock())

    @property
    def memory_bytes(self) -> ByteSize:
        return self._memory_bytes

    def get(self, key: CacheKeyBytes) -> tuple[CacheEntry | None, bool]:
        """Return ``(entry, found)``; expired copies are dropped on access."""
        local = self._entries.get(key)
        if local is None:
            self.statistics.misses += 1
            return None, False

        if local.is_expired(self.clock()):
            self._remove(key)
            self.statistics.expirations += 1
            self.statistics.misses += 1
            return None, False

        self.strategy.on_access(key)
        self.statistics.hits += 1
        return local.entry, True

    def put(self, entry: CacheEntry, ttl: DurationSeconds | None = None) -> bool:
        """Store a copy of `entry`; returns False when the copy was refused.

        Copies older than what this process has already observed are refused
        (monotonic reads), as are copies larger than the whole byte budget.
        """
        observed = self._observed.get(entry.key)
        if observed is not None and not observed.admits(entry.version):
            self.statistics.rejected_puts += 1
            logger.debug(
                f"L1 refused {key_repr(entry.key)} v{entry.version}: "
                f"already observed v{observed.version}"
                f"{' (deleted)' if observed.deleted else ''}"
            )
            return False

        now = self.clock()
        local_ttl = self.ttl if ttl is None else min(ttl, self.ttl)
        local_expires_at = min(now + local_ttl, entry.expires_at)
        if local_expires_at <= now:
            return False

        size = self._estimate_size(entry)
        if self.max_bytes is not None and size > self.max_bytes:
            self.statistics.rejected_puts += 1
            logger.debug(
                f"L1 refused {key_repr(entry.key)}: {size} bytes exceeds budget"
            )
            return False

        if entry.key in self._entries:
            self._remove(entry.key)
        self._make_room(size)

        self._entries[entry.key] = LocalEntry(
            entry=entry, local_expires_at=local_expires_at, size_bytes=size
        )
        self._memory_bytes += size
        self.strategy.on_insert(entry.key, local_expires_at)
        self.statistics.inserts += 1
        self.observe(entry.key, entry.version)
        return True

    def evict(self, key: CacheKeyBytes) -> bool:
        """Drop the local copy of `key` if present."""
        return self._remove(key)

    def clear(self) -> int:
        """Drop every local copy; observed versions are kept."""
        count = len(self._entries)
        self._entries.clear()
        self.strategy.clear()
        self._memory_bytes = 0
        return count

    def shorten_all(self, max_ttl: DurationSeconds) -> int:
        """Cap every copy's remaining local lifetime at `max_ttl` seconds."""
        cap = self.clock() + max_ttl
        shortened = 0
        for local in self._entries.values():
            if local.local_expires_at > cap:
                local.local_expires_at = cap
                shortened += 1
        return shortened

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [key for key, local in self._entries.items() if local.is_expired(now)]
        for key in expired:
            self._remove(key)
        self.statistics.expirations += len(expired)
        return len(expired)

    def observed_version(self, key: CacheKeyBytes) -> ObservedVersion | None:
        return self._observed.get(key)

    def observe(
        self, key: CacheKeyBytes, version: CacheVersion, *, deleted: bool = False
    ) -> None:
        """Record that `version` of `key` has been seen by this process."""
        current = self._observed.get(key)
        if current is not None:
            if version < current.version:
                return
            if version == current.version and not deleted:
                self._observed.move_to_end(key)
                return
        self._observed[key] = ObservedVersion(version=version, deleted=deleted)
        self._observed.move_to_end(key)
        while len(self._observed) > self.version_memory:
            self._observed.popitem(last=False)

    def apply_invalidation(self, event: InvalidationEvent) -> bool:
        """Apply a bus event; returns True when a local copy was evicted.

        Raises StaleInvalidation when the event refers to a version older than
        one this process has already observed for the key.
        """
        observed = self._observed.get(event.key)
        if observed is not None and event.source_version < observed.version:
            self.statistics.stale_invalidations += 1
            raise StaleInvalidation(event.key, event.source_version, observed.version)

        self.observe(
            event.key,
            event.source_version,
            deleted=event.kind is InvalidationKind.DELETE,
        )

        local = self._entries.get(event.key)
        if local is None or not event.supersedes(local.entry.version):
            return False
        self._remove(event.key)
        self.statistics.invalidations_applied += 1
        return True

    def _make_room(self, incoming_size: ByteSize) -> None:
        while self._entries and self._over_budget(incoming_size):
            victim = self.strategy.eviction_candidate()
            if victim is None or victim not in self._entries:
                # Strategy lost track of a key; fall back to insertion order.
                victim = next(iter(self._entries))
            self._remove(victim)
            self.statistics.evictions += 1

    def _over_budget(self, incoming_size: ByteSize) -> bool:
        if self.max_entries is not None and len(self._entries) + 1 > self.max_entries:
            return True
        if (
            self.max_bytes is not None
            and self._memory_bytes + incoming_size > self.max_bytes
        ):
            return True
        return False

    def _remove(self, key: CacheKeyBytes) -> bool:
        local = self._entries.pop(key, None)
        if local is None:
            return False
        self._memory_bytes -= local.size_bytes
        self.strategy.on_remove(key)
        return True

    def _estimate_size(self, entry: CacheEntry) -> ByteSize:
        if self.accurate_sizing:
            return asizeof.asizeof(entry.key) + asizeof.asizeof(entry.value)
        value_size = len(entry.value) if isinstance(entry.value, bytes) else 0
        return len(entry.key) + value_size
