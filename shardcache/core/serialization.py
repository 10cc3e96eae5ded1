"""
Serialization for cached values and shard-store records.

Values produced by loaders are encoded to bytes with orjson before they reach
the shared tier. Records stored on shard nodes (entries, leases, failure
markers) use a compact framing: an orjson header, a newline, then the raw
value bytes for entries.
"""

from abc import ABC, abstractmethod
from typing import Any

import orjson

from shardcache.datastructures.cache_records import (
    NEGATIVE_MARKER,
    CacheEntry,
    Lease,
    LoadFailure,
)

_FRAME_SEPARATOR = b"\n"


class Serializer(ABC):
    """Abstract base class for value serialization."""

    @abstractmethod
    def serialize(self, data: Any) -> bytes:
        """Serializes data into bytes."""
        pass

    @abstractmethod
    def deserialize(self, data: bytes) -> Any:
        """Deserializes bytes into data."""
        pass


class JsonSerializer(Serializer):
    """Serializer implementation using orjson for JSON serialization."""

    def serialize(self, data: Any) -> bytes:
        def default(obj: Any) -> Any:
            if isinstance(obj, frozenset | set):
                return sorted(obj)
            raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")

        return orjson.dumps(data, default=default)

    def deserialize(self, data: bytes) -> Any:
        return orjson.loads(data)


class RecordCodec:
    """Encodes shard-store records to bytes and back."""

    @staticmethod
    def encode_entry(entry: CacheEntry) -> bytes:
        header = orjson.dumps(
            {
                "created_at": entry.created_at,
                "expires_at": entry.expires_at,
                "version": entry.version,
                "negative": entry.is_negative,
            }
        )
        body = b"" if entry.is_negative else entry.value
        assert isinstance(body, bytes)
        return header + _FRAME_SEPARATOR + body

    @staticmethod
    def decode_entry(key: bytes, data: bytes) -> CacheEntry:
        header_bytes, _, body = data.partition(_FRAME_SEPARATOR)
        header = orjson.loads(header_bytes)
        return CacheEntry(
            key=key,
            value=NEGATIVE_MARKER if header["negative"] else body,
            created_at=header["created_at"],
            expires_at=header["expires_at"],
            version=header["version"],
        )

    @staticmethod
    def encode_lease(lease: Lease) -> bytes:
        return orjson.dumps(
            {
                "holder_id": lease.holder_id,
                "acquired_at": lease.acquired_at,
                "expires_at": lease.expires_at,
                "write_epoch": lease.write_epoch,
            }
        )

    @staticmethod
    def decode_lease(key: bytes, data: bytes) -> Lease:
        payload = orjson.loads(data)
        return Lease(
            key=key,
            holder_id=payload["holder_id"],
            acquired_at=payload["acquired_at"],
            expires_at=payload["expires_at"],
            write_epoch=payload.get("write_epoch", 0),
        )

    @staticmethod
    def encode_failure(failure: LoadFailure) -> bytes:
        return orjson.dumps(
            {
                "holder_id": failure.holder_id,
                "message": failure.message,
                "failed_at": failure.failed_at,
                "expires_at": failure.expires_at,
            }
        )

    @staticmethod
    def decode_failure(key: bytes, data: bytes) -> LoadFailure:
        payload = orjson.loads(data)
        return LoadFailure(
            key=key,
            holder_id=payload["holder_id"],
            message=payload["message"],
            failed_at=payload["failed_at"],
            expires_at=payload["expires_at"],
        )
