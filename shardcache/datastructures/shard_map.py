"""
Consistent-hash ring with virtual nodes.

A ShardMap is an immutable snapshot: membership changes produce a new map
with a higher version, and requests keep using the snapshot they started with.
"""

from __future__ import annotations

import bisect
import hashlib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from .type_aliases import (
    CacheKeyBytes,
    MapVersion,
    NodeId,
    RingPosition,
    VirtualNodeId,
)

RING_BITS = 64
RING_SIZE = 1 << RING_BITS
DEFAULT_VIRTUAL_NODES = 160


def ring_hash(data: bytes) -> RingPosition:
    """Place raw bytes on the 64-bit ring."""
    digest = hashlib.blake2b(data, digest_size=RING_BITS // 8).digest()
    return int.from_bytes(digest, "big")


def virtual_node_id(node_id: NodeId, index: int) -> VirtualNodeId:
    return f"{node_id}#{index}"


@dataclass(frozen=True, slots=True, order=True)
class VirtualNode:
    """One ring position owned by a physical node.

    Field order makes the natural ordering (position, node_id, vnode_id), so
    equal positions break ties toward the lexicographically smaller node.
    """

    position: RingPosition
    node_id: NodeId
    vnode_id: VirtualNodeId


@dataclass(frozen=True, slots=True)
class ShardMap:
    """Hash-ordered ring of virtual nodes for a fixed membership."""

    vnodes: tuple[VirtualNode, ...] = ()
    members: frozenset[NodeId] = frozenset()
    virtual_nodes_per_member: int = DEFAULT_VIRTUAL_NODES
    version: MapVersion = 0
    _positions: tuple[RingPosition, ...] = field(
        default=(), init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.virtual_nodes_per_member < 1:
            raise ValueError("virtual_nodes_per_member must be positive")
        if any(a > b for a, b in zip(self.vnodes, self.vnodes[1:], strict=False)):
            raise ValueError("ShardMap virtual nodes must be hash-ordered")
        object.__setattr__(
            self, "_positions", tuple(vnode.position for vnode in self.vnodes)
        )

    @classmethod
    def build(
        cls,
        members: Iterable[NodeId],
        virtual_nodes_per_member: int = DEFAULT_VIRTUAL_NODES,
        version: MapVersion = 0,
    ) -> ShardMap:
        member_set = frozenset(members)
        if any(not member for member in member_set):
            raise ValueError("Node ids cannot be empty")
        vnodes = sorted(
            VirtualNode(
                position=ring_hash(virtual_node_id(node_id, i).encode("utf-8")),
                node_id=node_id,
                vnode_id=virtual_node_id(node_id, i),
            )
            for node_id in member_set
            for i in range(virtual_nodes_per_member)
        )
        return cls(
            vnodes=tuple(vnodes),
            members=member_set,
            virtual_nodes_per_member=virtual_nodes_per_member,
            version=version,
        )

    def with_members(self, members: Iterable[NodeId]) -> ShardMap:
        """A new map for `members`, one version newer than this one."""
        return ShardMap.build(
            members,
            virtual_nodes_per_member=self.virtual_nodes_per_member,
            version=self.version + 1,
        )

    def is_empty(self) -> bool:
        return not self.vnodes

    def __len__(self) -> int:
        return len(self.vnodes)

    def _start_index(self, key: CacheKeyBytes) -> int:
        index = bisect.bisect_left(self._positions, ring_hash(key))
        return 0 if index == len(self._positions) else index

    def walk(self, key: CacheKeyBytes) -> Iterator[VirtualNode]:
        """Virtual nodes clockwise from the key's ring position, wrapping once."""
        if not self.vnodes:
            return
        start = self._start_index(key)
        count = len(self.vnodes)
        for offset in range(count):
            yield self.vnodes[(start + offset) % count]

    def owner(self, key: CacheKeyBytes) -> NodeId:
        """Physical node owning `key` (the first virtual node clockwise)."""
        if not self.vnodes:
            raise LookupError("ShardMap has no members")
        return self.vnodes[self._start_index(key)].node_id

    def preference_list(
        self,
        key: CacheKeyBytes,
        count: int | None = None,
        exclude: frozenset[NodeId] = frozenset(),
    ) -> list[NodeId]:
        """Distinct physical nodes in ring order starting at the key's owner."""
        limit = len(self.members) if count is None else count
        nodes: list[NodeId] = []
        seen: set[NodeId] = set()
        for vnode in self.walk(key):
            if vnode.node_id in seen or vnode.node_id in exclude:
                continue
            seen.add(vnode.node_id)
            nodes.append(vnode.node_id)
            if len(nodes) >= limit:
                break
        return nodes

    def ownership_share(self) -> dict[NodeId, float]:
        """Fraction of the ring each member owns (arc length ending at its vnodes)."""
        if not self.vnodes:
            return {}
        shares = dict.fromkeys(self.members, 0)
        previous = self.vnodes[-1].position - RING_SIZE
        for vnode in self.vnodes:
            shares[vnode.node_id] += vnode.position - previous
            previous = vnode.position
        return {node_id: arc / RING_SIZE for node_id, arc in shares.items()}
