"""
shardcache core.

Tiers, coordination and the ambient plumbing (settings, logging, task
tracking, serialization) for a multi-level sharded cache.
"""

from .config import (
    GapPolicy,
    InvalidationSettings,
    LocalTierSettings,
    RouterSettings,
    ShardCacheSettings,
    SharedTierSettings,
    StampedeSettings,
)
from .coordinator import MultiLevelCache
from .deadline import Deadline, RetryPolicy
from .errors import (
    DeadlineExceeded,
    LeaseTimeout,
    LoaderError,
    ShardCacheError,
    ShardUnavailable,
    StaleInvalidation,
    TransportError,
    TransportTimeoutError,
)
from .eviction import EvictionPolicy, create_strategy
from .invalidation_bus import InvalidationBus, MemoryInvalidationHub
from .local_tier import LocalTier
from .logging import configure_logging
from .shard_router import ShardRouter, StaticMembershipSource
from .shard_store import MemoryShardCluster, MemoryShardStore
from .shared_tier import SharedTierClient
from .stampede import StampedeGuard
from .statistics import CacheStats

__all__ = [
    "GapPolicy",
    "InvalidationSettings",
    "LocalTierSettings",
    "RouterSettings",
    "ShardCacheSettings",
    "SharedTierSettings",
    "StampedeSettings",
    "MultiLevelCache",
    "Deadline",
    "RetryPolicy",
    "DeadlineExceeded",
    "LeaseTimeout",
    "LoaderError",
    "ShardCacheError",
    "ShardUnavailable",
    "StaleInvalidation",
    "TransportError",
    "TransportTimeoutError",
    "EvictionPolicy",
    "create_strategy",
    "InvalidationBus",
    "MemoryInvalidationHub",
    "LocalTier",
    "configure_logging",
    "ShardRouter",
    "StaticMembershipSource",
    "MemoryShardCluster",
    "MemoryShardStore",
    "SharedTierClient",
    "StampedeGuard",
    "CacheStats",
]
