"""
Records shared by the cache tiers, the stampede guard and the invalidation bus.

All records are immutable. A record is either owned by the shared tier (L2)
and copied into process-local tiers, or is ephemeral (invalidation events).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from .type_aliases import (
    CacheKeyBytes,
    CacheKeyInput,
    CacheVersion,
    DurationSeconds,
    EncodedValue,
    HolderId,
    ProcessId,
    Timestamp,
)


class _Marker(Enum):
    """Sentinels that must never collide with a cached value."""

    NEGATIVE = "negative"
    NOT_FOUND = "not_found"

    def __repr__(self) -> str:
        return f"<{self.name}>"


# Stored in place of a value when the loader reported the key does not exist.
NEGATIVE_MARKER = _Marker.NEGATIVE

# Returned by loaders (and by the cache) for keys that do not exist upstream.
NOT_FOUND = _Marker.NOT_FOUND

type NotFound = _Marker

# What an entry holds: encoded bytes, or NEGATIVE_MARKER.
type StoredValue = EncodedValue | _Marker


def as_key_bytes(key: CacheKeyInput) -> CacheKeyBytes:
    """Normalize a caller-supplied key to raw bytes."""
    if isinstance(key, bytes):
        return key
    if isinstance(key, str):
        return key.encode("utf-8")
    raise TypeError(f"Cache keys must be str or bytes, got {type(key).__name__}")


def key_repr(key: CacheKeyBytes) -> str:
    """Printable form of a key for log messages."""
    return key.decode("utf-8", errors="backslashreplace")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A versioned value owned by the shared tier."""

    key: CacheKeyBytes
    value: StoredValue
    created_at: Timestamp
    expires_at: Timestamp
    version: CacheVersion

    def __post_init__(self) -> None:
        if self.version < 1:
            raise ValueError(f"Entry version must be >= 1, got {self.version}")
        if self.expires_at < self.created_at:
            raise ValueError("Entry cannot expire before it was created")
        if self.value is NOT_FOUND:
            raise ValueError("Use NEGATIVE_MARKER to store a missing key")

    @classmethod
    def create(
        cls,
        key: CacheKeyBytes,
        value: StoredValue,
        ttl: DurationSeconds,
        version: CacheVersion,
        now: Timestamp | None = None,
    ) -> CacheEntry:
        created = time.time() if now is None else now
        return cls(
            key=key,
            value=value,
            created_at=created,
            expires_at=created + ttl,
            version=version,
        )

    @property
    def is_negative(self) -> bool:
        return self.value is NEGATIVE_MARKER

    @property
    def requested_ttl(self) -> DurationSeconds:
        return self.expires_at - self.created_at

    def remaining_ttl(self, now: Timestamp | None = None) -> DurationSeconds:
        current = time.time() if now is None else now
        return max(0.0, self.expires_at - current)

    def is_expired(self, now: Timestamp | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at


@dataclass(frozen=True, slots=True)
class Lease:
    """Exclusive, time-bounded right to recompute one key."""

    key: CacheKeyBytes
    holder_id: HolderId
    acquired_at: Timestamp
    expires_at: Timestamp
    # Key's delete epoch when the lease was granted; a different epoch at
    # population time means the data changed while the holder recomputed.
    write_epoch: int = 0

    @classmethod
    def create(
        cls,
        key: CacheKeyBytes,
        holder_id: HolderId,
        timeout: DurationSeconds,
        write_epoch: int = 0,
        now: Timestamp | None = None,
    ) -> Lease:
        acquired = time.time() if now is None else now
        return cls(
            key=key,
            holder_id=holder_id,
            acquired_at=acquired,
            expires_at=acquired + timeout,
            write_epoch=write_epoch,
        )

    def is_expired(self, now: Timestamp | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at

    def remaining(self, now: Timestamp | None = None) -> DurationSeconds:
        current = time.time() if now is None else now
        return max(0.0, self.expires_at - current)


@dataclass(frozen=True, slots=True)
class LoadFailure:
    """Short-lived record of a failed recompute, shared with waiting callers."""

    key: CacheKeyBytes
    holder_id: HolderId
    message: str
    failed_at: Timestamp
    expires_at: Timestamp

    def is_expired(self, now: Timestamp | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at


class InvalidationKind(Enum):
    """What happened to the key at the shared tier."""

    SET = "set"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class InvalidationEvent:
    """A "key changed" notification fanned out to every local tier."""

    key: CacheKeyBytes
    source_version: CacheVersion
    issued_at: Timestamp = field(default_factory=time.time)
    kind: InvalidationKind = InvalidationKind.DELETE
    origin: ProcessId = ""
    sequence: int = 0

    def supersedes(self, local_version: CacheVersion) -> bool:
        """Whether a local copy at `local_version` must be evicted."""
        if self.kind is InvalidationKind.SET:
            return local_version < self.source_version
        return local_version <= self.source_version
