"""Tests for settings loading from defaults, environment and TOML files."""

import os

import pytest
from pydantic import ValidationError

from shardcache.core.config import GapPolicy, ShardCacheSettings
from shardcache.core.eviction import EvictionPolicy


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Run each test away from any real .env and SHARDCACHE_* variables."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("SHARDCACHE_"):
            monkeypatch.delenv(name)


def test_defaults():
    settings = ShardCacheSettings()
    assert settings.process_id is None
    assert settings.request_timeout == 5.0
    assert settings.degrade_to_loader
    assert settings.local_tier.ttl == 5.0
    assert settings.local_tier.eviction_policy is EvictionPolicy.LRU
    assert settings.local_tier.gap_policy is GapPolicy.SHORTEN
    assert settings.shared_tier.negative_ttl == 30.0
    assert settings.stampede.lease_timeout == 10.0
    assert settings.router.virtual_nodes == 160
    assert settings.invalidation.enabled


def test_nested_environment_override(monkeypatch):
    monkeypatch.setenv("SHARDCACHE_STAMPEDE__LEASE_TIMEOUT", "2.5")
    monkeypatch.setenv("SHARDCACHE_DEGRADE_TO_LOADER", "false")
    monkeypatch.setenv("SHARDCACHE_LOCAL_TIER__EVICTION_POLICY", "s4lru")
    settings = ShardCacheSettings()
    assert settings.stampede.lease_timeout == 2.5
    assert not settings.degrade_to_loader
    assert settings.local_tier.eviction_policy is EvictionPolicy.S4LRU


def test_dotenv_file(tmp_path):
    (tmp_path / ".env").write_text("SHARDCACHE_REQUEST_TIMEOUT=0.25\n")
    assert ShardCacheSettings().request_timeout == 0.25


def test_from_path_reads_shardcache_table(tmp_path):
    path = tmp_path / "cache.toml"
    path.write_text(
        """
[shardcache]
process_id = "api-1"
request_timeout = 1.5

[shardcache.router]
members = ["shard-a", "shard-b"]
virtual_nodes = 64

[shardcache.local_tier]
max_entries = 500
gap_policy = "clear"
"""
    )
    settings = ShardCacheSettings.from_path(path)
    assert settings.process_id == "api-1"
    assert settings.request_timeout == 1.5
    assert settings.router.members == ["shard-a", "shard-b"]
    assert settings.router.virtual_nodes == 64
    assert settings.local_tier.max_entries == 500
    assert settings.local_tier.gap_policy is GapPolicy.CLEAR


def test_from_path_without_table_and_overrides(tmp_path):
    path = tmp_path / "flat.toml"
    path.write_text('process_id = "flat"\n')
    settings = ShardCacheSettings.from_path(path, process_id="override")
    assert settings.process_id == "override"


class TestValidation:
    """Test rejected configurations."""

    def test_local_ttl_cannot_exceed_shared_ttl(self):
        with pytest.raises(ValidationError, match="local_tier.ttl"):
            ShardCacheSettings(
                local_tier={"ttl": 600.0}, shared_tier={"default_ttl": 300.0}
            )

    def test_poll_interval_bounds(self):
        with pytest.raises(ValidationError, match="poll_interval"):
            ShardCacheSettings(
                stampede={"poll_interval": 1.0, "poll_max_interval": 0.5}
            )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"router": {"virtual_nodes": 0}},
            {"request_timeout": 0},
            {"shared_tier": {"retry_attempts": 0}},
            {"local_tier": {"eviction_policy": "random"}},
        ],
    )
    def test_field_constraints(self, overrides):
        with pytest.raises(ValidationError):
            ShardCacheSettings(**overrides)
