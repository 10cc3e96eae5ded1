"""
Semantic type aliases for shardcache datastructures.

These aliases keep signatures self-documenting: a `NodeId` and a `HolderId`
are both strings on the wire but mean very different things in the protocol.
"""

from typing import Any

# Time and timestamp types
type Timestamp = float
type DurationSeconds = float

# Identifier types
type NodeId = str
type VirtualNodeId = str
type HolderId = str
type ProcessId = str
type SubscriptionId = str

# Cache key/value types
type CacheKeyBytes = bytes
type CacheKeyInput = str | bytes
type EncodedValue = bytes
type CacheVersion = int
type ByteSize = int

# Ring types
type RingPosition = int
type MapVersion = int

# Statistics types
type HitCount = int
type MissCount = int
type EvictionCount = int
type Ratio = float

# Serialization types
type JsonDict = dict[str, Any]
