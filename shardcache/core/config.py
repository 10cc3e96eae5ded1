"""
Configuration for a shardcache process.

Settings come from (in increasing precedence) defaults, a `.env` file,
`SHARDCACHE_*` environment variables, and explicit arguments, which include
the table read by `ShardCacheSettings.from_path`. Nested groups use `__` in
environment names, for example ``SHARDCACHE_STAMPEDE__LEASE_TIMEOUT=5``.
"""

from __future__ import annotations

import tomllib
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .eviction import EvictionPolicy


class GapPolicy(StrEnum):
    """What a local tier does after the invalidation bus reconnects."""

    SHORTEN = "shorten"
    CLEAR = "clear"


class RouterSettings(BaseModel):
    members: list[str] = Field(
        default_factory=list, description="Initial physical shard node ids."
    )
    virtual_nodes: int = Field(
        160, ge=1, le=1024, description="Virtual ring positions per physical node."
    )
    degraded_cooldown: float = Field(
        30.0,
        ge=0.0,
        description="Seconds a node stays routed-around after a failure.",
    )


class LocalTierSettings(BaseModel):
    max_entries: int | None = Field(
        10_000, ge=1, description="Maximum number of L1 entries."
    )
    max_bytes: int | None = Field(
        None, ge=1, description="Maximum L1 footprint in bytes (pympler sizing)."
    )
    ttl: float = Field(
        5.0, gt=0.0, description="Local TTL; bounds staleness after a lost event."
    )
    eviction_policy: EvictionPolicy = Field(
        EvictionPolicy.LRU, description="L1 eviction strategy."
    )
    s4lru_segments: int = Field(4, ge=1, description="Segments for S4LRU.")
    gap_policy: GapPolicy = Field(
        GapPolicy.SHORTEN, description="L1 policy after an invalidation gap."
    )
    gap_ttl: float = Field(
        1.0, ge=0.0, description="Local TTL cap applied after an invalidation gap."
    )
    version_memory: int = Field(
        100_000, ge=1, description="Keys whose highest seen version is remembered."
    )


class SharedTierSettings(BaseModel):
    default_ttl: float = Field(300.0, gt=0.0, description="L2 entry TTL.")
    negative_ttl: float = Field(30.0, gt=0.0, description="TTL of NotFound markers.")
    failure_ttl: float = Field(
        1.0, gt=0.0, description="TTL of shared loader-failure records."
    )
    retry_attempts: int = Field(3, ge=1, description="Attempts per L2 operation.")
    retry_initial_delay: float = Field(0.01, ge=0.0)
    retry_max_delay: float = Field(0.5, ge=0.0)
    retry_backoff_multiplier: float = Field(2.0, ge=1.0)
    retry_jitter: float = Field(0.1, ge=0.0, le=1.0)


class StampedeSettings(BaseModel):
    lease_timeout: float = Field(
        10.0, gt=0.0, description="Upper bound on a recompute before takeover."
    )
    poll_interval: float = Field(
        0.01, gt=0.0, description="First wait between polls for a remote winner."
    )
    poll_max_interval: float = Field(0.2, gt=0.0)
    early_refresh_enabled: bool = True
    early_refresh_beta: float = Field(
        8.0,
        ge=0.0,
        description="beta in P(refresh) = exp(-beta * remaining / requested).",
    )


class InvalidationSettings(BaseModel):
    enabled: bool = True
    queue_size: int = Field(
        10_000, ge=1, description="Per-subscriber delivery queue bound."
    )


class ShardCacheSettings(BaseSettings):
    """Top-level settings for one cache process."""

    model_config = SettingsConfigDict(
        env_prefix="SHARDCACHE_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    process_id: str | None = Field(
        None, description="Identity of this process; generated when unset."
    )
    log_level: str = Field("INFO", description="loguru level for the stderr sink.")
    request_timeout: float = Field(
        5.0, gt=0.0, description="Default caller deadline in seconds."
    )
    degrade_to_loader: bool = Field(
        True,
        description="Call the loader directly when the cache misses its deadline.",
    )

    router: RouterSettings = Field(default_factory=RouterSettings)
    local_tier: LocalTierSettings = Field(default_factory=LocalTierSettings)
    shared_tier: SharedTierSettings = Field(default_factory=SharedTierSettings)
    stampede: StampedeSettings = Field(default_factory=StampedeSettings)
    invalidation: InvalidationSettings = Field(default_factory=InvalidationSettings)

    @model_validator(mode="after")
    def _check_ttls(self) -> ShardCacheSettings:
        if self.local_tier.ttl > self.shared_tier.default_ttl:
            raise ValueError("local_tier.ttl must not exceed shared_tier.default_ttl")
        if self.stampede.poll_interval > self.stampede.poll_max_interval:
            raise ValueError("stampede.poll_interval exceeds poll_max_interval")
        return self

    @classmethod
    def from_path(cls, path: str | Path, **overrides: Any) -> ShardCacheSettings:
        """Load settings from the ``[shardcache]`` table of a TOML file."""
        with Path(path).open("rb") as handle:
            document = tomllib.load(handle)
        section = document.get("shardcache", document)
        return cls(**{**section, **overrides})
