"""Exception taxonomy for the cache coordination layer."""

from __future__ import annotations

from shardcache.datastructures.cache_records import key_repr
from shardcache.datastructures.type_aliases import CacheKeyBytes, NodeId


class ShardCacheError(Exception):
    """Base exception for cache-layer errors."""

    pass


class TransportError(ShardCacheError):
    """Raised when the shared tier or the invalidation bus is unreachable."""

    pass


class TransportTimeoutError(TransportError):
    """Raised when a shared-tier round trip exceeds its deadline."""

    pass


class ShardUnavailable(TransportError):
    """Raised when the physical node a key routes to is down."""

    def __init__(self, node_id: NodeId, reason: str = "node unavailable") -> None:
        super().__init__(f"Shard {node_id} unavailable: {reason}")
        self.node_id = node_id
        self.reason = reason


class LoaderError(ShardCacheError):
    """Raised when recomputing a key failed.

    Every caller coalesced onto the failed recompute receives this error; the
    original exception is chained as ``__cause__`` when it is known locally.
    """

    def __init__(self, key: CacheKeyBytes, message: str, *, remote: bool = False):
        super().__init__(f"Loader failed for {key_repr(key)}: {message}")
        self.key = key
        self.message = message
        self.remote = remote


class LeaseTimeout(ShardCacheError):
    """Raised when a lease winner did not populate the key before its lease expired."""

    def __init__(self, key: CacheKeyBytes, holder_id: str) -> None:
        super().__init__(
            f"Lease on {key_repr(key)} held by {holder_id} expired before population"
        )
        self.key = key
        self.holder_id = holder_id


class StaleInvalidation(ShardCacheError):
    """Raised at a subscriber for an invalidation older than what it has observed."""

    def __init__(
        self, key: CacheKeyBytes, event_version: int, observed_version: int
    ) -> None:
        super().__init__(
            f"Stale invalidation for {key_repr(key)}: "
            f"v{event_version} < observed v{observed_version}"
        )
        self.key = key
        self.event_version = event_version
        self.observed_version = observed_version


class DeadlineExceeded(ShardCacheError):
    """Raised when a caller deadline expired and loader fallback is disabled."""

    def __init__(self, key: CacheKeyBytes, stage: str) -> None:
        super().__init__(f"Deadline exceeded for {key_repr(key)} during {stage}")
        self.key = key
        self.stage = stage
