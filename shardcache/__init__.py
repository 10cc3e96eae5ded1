"""
shardcache - multi-level sharded caching with stampede protection

A read-through cache for fleets of processes sharing one backing store:

- **L1**: a bounded process-local tier with short TTLs
- **L2**: a shared tier partitioned across shard nodes by consistent hashing
- **Stampede guard**: single-flight per process plus a lease per key across
  processes, so a cold key is recomputed once
- **Invalidation bus**: versioned "key changed" events keep L1 copies fresh

## Quick Start

```python
from shardcache import MemoryInvalidationHub, MemoryShardCluster, MultiLevelCache
from shardcache.core import ShardCacheSettings, ShardRouter

cluster = MemoryShardCluster(["shard-a", "shard-b", "shard-c"])
cache = MultiLevelCache(
    router=ShardRouter(cluster.nodes),
    shard_transport=cluster,
    invalidation_transport=MemoryInvalidationHub(),
    settings=ShardCacheSettings(process_id="web-1"),
)
await cache.start()
user = await cache.get("user:42", load_user)
```
"""

from .core import (
    CacheStats,
    DeadlineExceeded,
    LoaderError,
    MemoryInvalidationHub,
    MemoryShardCluster,
    MultiLevelCache,
    ShardCacheError,
    ShardCacheSettings,
)
from .datastructures import NOT_FOUND, CacheEntry, InvalidationEvent, ShardMap

__version__ = "0.1.0"

__all__ = [
    "CacheStats",
    "DeadlineExceeded",
    "LoaderError",
    "MemoryInvalidationHub",
    "MemoryShardCluster",
    "MultiLevelCache",
    "ShardCacheError",
    "ShardCacheSettings",
    "NOT_FOUND",
    "CacheEntry",
    "InvalidationEvent",
    "ShardMap",
]
