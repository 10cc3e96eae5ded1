"""Aggregated cache statistics for one process."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from shardcache.datastructures.type_aliases import (
    ByteSize,
    EvictionCount,
    HitCount,
    JsonDict,
    MapVersion,
    MissCount,
    NodeId,
    ProcessId,
    Ratio,
)


@dataclass(slots=True)
class CoordinatorStatistics:
    """Request-level counters kept by the multi-level cache."""

    requests: int = 0
    l1_hits: HitCount = 0
    l2_hits: HitCount = 0
    misses: MissCount = 0
    stale_l2_reads: int = 0
    fallback_loads: int = 0
    deletes: int = 0

    def hit_rate(self) -> Ratio:
        if self.requests == 0:
            return 0.0
        return (self.l1_hits + self.l2_hits) / self.requests


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Point-in-time view of a process's cache behaviour."""

    process_id: ProcessId
    hit_rate: Ratio
    l1_hit_rate: Ratio
    eviction_rate: Ratio
    lease_contention: int
    requests: int = 0
    l1_hits: HitCount = 0
    l2_hits: HitCount = 0
    misses: MissCount = 0
    coalesced_requests: int = 0
    loads: int = 0
    load_failures: int = 0
    fallback_loads: int = 0
    stale_l2_reads: int = 0
    lease_timeouts: int = 0
    stale_leases: int = 0
    early_refreshes: int = 0
    evictions: EvictionCount = 0
    expirations: int = 0
    invalidations_applied: int = 0
    stale_invalidations: int = 0
    invalidation_gaps: int = 0
    l1_entries: int = 0
    l1_bytes: ByteSize = 0
    shard_map_version: MapVersion = 0
    degraded_nodes: tuple[NodeId, ...] = field(default_factory=tuple)

    def to_dict(self) -> JsonDict:
        data = asdict(self)
        data["degraded_nodes"] = list(self.degraded_nodes)
        return data
