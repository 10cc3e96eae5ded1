"""
Key-to-shard routing over immutable ShardMap snapshots.

Membership changes build a new map and swap it in with a single assignment;
callers that captured the previous snapshot keep using it until their request
finishes. Failed nodes are marked degraded and routed around through the next
distinct physical node on the ring.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from loguru import logger

from shardcache.datastructures.shard_map import DEFAULT_VIRTUAL_NODES, ShardMap
from shardcache.datastructures.type_aliases import (
    CacheKeyBytes,
    DurationSeconds,
    NodeId,
    Timestamp,
)

from .errors import TransportError


class MembershipSource(Protocol):
    """Where the router learns the current set of shard nodes."""

    async def fetch(self) -> set[NodeId]: ...


@dataclass(slots=True)
class StaticMembershipSource:
    """Membership held in memory; `reachable=False` simulates a fetch outage."""

    members: set[NodeId] = field(default_factory=set)
    reachable: bool = True

    async def fetch(self) -> set[NodeId]:
        if not self.reachable:
            raise TransportError("membership source unreachable")
        return set(self.members)


class ShardRouter:
    """Routes keys to physical shard nodes."""

    def __init__(
        self,
        members: Iterable[NodeId] = (),
        *,
        virtual_nodes: int = DEFAULT_VIRTUAL_NODES,
        degraded_cooldown: DurationSeconds = 30.0,
        clock: Callable[[], Timestamp] = time.time,
    ) -> None:
        self.degraded_cooldown = degraded_cooldown
        self.clock = clock
        self._map = ShardMap.build(members, virtual_nodes_per_member=virtual_nodes)
        self._degraded_until: dict[NodeId, Timestamp] = {}
        self.failed_refreshes = 0

    @property
    def current(self) -> ShardMap:
        """The snapshot new requests should route against."""
        return self._map

    @property
    def members(self) -> frozenset[NodeId]:
        return self._map.members

    def rebuild(self, members: Iterable[NodeId]) -> ShardMap:
        """Build and install a map for `members`; returns the new snapshot."""
        member_set = frozenset(members)
        if member_set == self._map.members:
            return self._map
        previous = self._map
        self._map = previous.with_members(member_set)
        for node_id in list(self._degraded_until):
            if node_id not in member_set:
                del self._degraded_until[node_id]
        logger.info(
            f"Shard map v{self._map.version}: "
            f"+{sorted(member_set - previous.members)} "
            f"-{sorted(previous.members - member_set)} "
            f"({len(member_set)} nodes, {len(self._map)} virtual nodes)"
        )
        return self._map

    def add_member(self, node_id: NodeId) -> ShardMap:
        return self.rebuild(self._map.members | {node_id})

    def remove_member(self, node_id: NodeId) -> ShardMap:
        return self.rebuild(self._map.members - {node_id})

    async def refresh(self, source: MembershipSource) -> ShardMap:
        """Fetch membership and rebuild; keeps the last-known-good map on failure."""
        try:
            members = await source.fetch()
        except Exception as e:
            self.failed_refreshes += 1
            logger.warning(
                f"Membership fetch failed, keeping shard map v{self._map.version}: {e}"
            )
            return self._map
        return self.rebuild(members)

    def mark_degraded(self, node_id: NodeId) -> None:
        if node_id not in self._degraded_until:
            logger.warning(
                f"Shard {node_id} degraded for {self.degraded_cooldown:.1f}s; "
                "routing to secondary owners"
            )
        self._degraded_until[node_id] = self.clock() + self.degraded_cooldown

    def mark_healthy(self, node_id: NodeId) -> None:
        if self._degraded_until.pop(node_id, None) is not None:
            logger.info(f"Shard {node_id} healthy again")

    def is_degraded(self, node_id: NodeId) -> bool:
        until = self._degraded_until.get(node_id)
        if until is None:
            return False
        if self.clock() >= until:
            del self._degraded_until[node_id]
            return False
        return True

    def degraded_nodes(self) -> frozenset[NodeId]:
        return frozenset(
            node_id for node_id in list(self._degraded_until) if self.is_degraded(node_id)
        )

    def candidates(
        self, key: CacheKeyBytes, snapshot: ShardMap | None = None
    ) -> list[NodeId]:
        """Owners to try for `key`: healthy nodes in ring order, degraded ones last."""
        ring = snapshot or self._map
        owners = ring.preference_list(key)
        healthy = [node_id for node_id in owners if not self.is_degraded(node_id)]
        degraded = [node_id for node_id in owners if node_id not in healthy]
        return healthy + degraded

    def route(self, key: CacheKeyBytes, snapshot: ShardMap | None = None) -> NodeId:
        """Node serving `key`; the primary owner unless it is degraded."""
        ring = snapshot or self._map
        if ring.is_empty():
            raise LookupError("No shard members configured")
        primary = ring.owner(key)
        if not self.is_degraded(primary):
            return primary
        # Secondary hash position: next distinct healthy node clockwise.
        for node_id in ring.preference_list(key):
            if not self.is_degraded(node_id):
                return node_id
        return primary
