"""
shardcache datastructures.

Immutable records shared across the cache tiers:
- CacheEntry / Lease / LoadFailure: shared-tier records
- InvalidationEvent: bus payload
- ShardMap / VirtualNode: consistent-hash ring snapshot
"""

from __future__ import annotations

from .cache_records import (
    NEGATIVE_MARKER,
    NOT_FOUND,
    CacheEntry,
    InvalidationEvent,
    InvalidationKind,
    Lease,
    LoadFailure,
    StoredValue,
    as_key_bytes,
    key_repr,
)
from .shard_map import DEFAULT_VIRTUAL_NODES, ShardMap, VirtualNode, ring_hash

__all__ = [
    "NEGATIVE_MARKER",
    "NOT_FOUND",
    "CacheEntry",
    "InvalidationEvent",
    "InvalidationKind",
    "Lease",
    "LoadFailure",
    "StoredValue",
    "as_key_bytes",
    "key_repr",
    "DEFAULT_VIRTUAL_NODES",
    "ShardMap",
    "VirtualNode",
    "ring_hash",
]
