"""
Pluggable eviction strategies for the local tier.

A strategy only tracks key ordering; the local tier owns the entries, decides
when it is over budget, and asks the strategy which key to drop next.
"""

from __future__ import annotations

import heapq
import itertools
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from shardcache.datastructures.type_aliases import CacheKeyBytes, Timestamp


class EvictionPolicy(StrEnum):
    """Named eviction strategies."""

    LRU = "lru"
    LFU = "lfu"
    TTL = "ttl"
    S4LRU = "s4lru"


class EvictionStrategy(Protocol):
    """Capability interface every eviction strategy implements."""

    def on_access(self, key: CacheKeyBytes) -> None: ...

    def on_insert(
        self, key: CacheKeyBytes, expires_at: Timestamp | None = None
    ) -> None: ...

    def on_remove(self, key: CacheKeyBytes) -> None: ...

    def eviction_candidate(self) -> CacheKeyBytes | None: ...

    def clear(self) -> None: ...


@dataclass(slots=True)
class LRUStrategy:
    """Least recently used: the oldest access is evicted first."""

    _order: OrderedDict[CacheKeyBytes, None] = field(default_factory=OrderedDict)

    def on_access(self, key: CacheKeyBytes) -> None:
        if key in self._order:
            self._order.move_to_end(key)

    def on_insert(self, key: CacheKeyBytes, expires_at: Timestamp | None = None) -> None:
        self._order[key] = None
        self._order.move_to_end(key)

    def on_remove(self, key: CacheKeyBytes) -> None:
        self._order.pop(key, None)

    def eviction_candidate(self) -> CacheKeyBytes | None:
        return next(iter(self._order), None)

    def clear(self) -> None:
        self._order.clear()


@dataclass(slots=True)
class LFUStrategy:
    """Least frequently used with O(1) frequency buckets.

    Ties within the lowest frequency fall back to least recently touched.
    """

    _counts: dict[CacheKeyBytes, int] = field(default_factory=dict)
    _buckets: defaultdict[int, OrderedDict[CacheKeyBytes, None]] = field(
        default_factory=lambda: defaultdict(OrderedDict)
    )
    _min_count: int = 0

    def _unlink(self, key: CacheKeyBytes, count: int) -> None:
        bucket = self._buckets[count]
        bucket.pop(key, None)
        if not bucket:
            del self._buckets[count]
            if self._min_count == count:
                self._min_count = min(self._buckets, default=0)

    def on_access(self, key: CacheKeyBytes) -> None:
        count = self._counts.get(key)
        if count is None:
            return
        self._unlink(key, count)
        self._counts[key] = count + 1
        self._buckets[count + 1][key] = None
        if self._min_count == 0 or count + 1 < self._min_count:
            self._min_count = min(self._buckets)

    def on_insert(self, key: CacheKeyBytes, expires_at: Timestamp | None = None) -> None:
        existing = self._counts.get(key)
        if existing is not None:
            self.on_access(key)
            return
        self._counts[key] = 1
        self._buckets[1][key] = None
        self._min_count = 1

    def on_remove(self, key: CacheKeyBytes) -> None:
        count = self._counts.pop(key, None)
        if count is not None:
            self._unlink(key, count)

    def eviction_candidate(self) -> CacheKeyBytes | None:
        if not self._counts:
            return None
        return next(iter(self._buckets[self._min_count]))

    def frequency(self, key: CacheKeyBytes) -> int:
        return self._counts.get(key, 0)

    def clear(self) -> None:
        self._counts.clear()
        self._buckets.clear()
        self._min_count = 0


@dataclass(slots=True)
class TTLStrategy:
    """Soonest local expiry is evicted first; keys without expiry go last."""

    _heap: list[tuple[float, int, CacheKeyBytes]] = field(default_factory=list)
    _live: dict[CacheKeyBytes, int] = field(default_factory=dict)
    _counter: itertools.count[int] = field(default_factory=itertools.count)

    def on_access(self, key: CacheKeyBytes) -> None:
        return None

    def on_insert(self, key: CacheKeyBytes, expires_at: Timestamp | None = None) -> None:
        sequence = next(self._counter)
        deadline = float("inf") if expires_at is None else expires_at
        self._live[key] = sequence
        heapq.heappush(self._heap, (deadline, sequence, key))
        self._compact()

    def on_remove(self, key: CacheKeyBytes) -> None:
        self._live.pop(key, None)
        self._compact()

    def _compact(self) -> None:
        # Superseded items may make up at most half the heap.
        if len(self._heap) <= 2 * len(self._live) + 1:
            return
        self._heap = [
            item for item in self._heap if self._live.get(item[2]) == item[1]
        ]
        heapq.heapify(self._heap)

    def eviction_candidate(self) -> CacheKeyBytes | None:
        # Lazy deletion: drop heap items superseded by re-inserts or removals.
        while self._heap:
            _deadline, sequence, key = self._heap[0]
            if self._live.get(key) == sequence:
                return key
            heapq.heappop(self._heap)
        return None

    def clear(self) -> None:
        self._heap.clear()
        self._live.clear()


@dataclass(slots=True)
class SegmentedLRUStrategy:
    """
    Segmented LRU (S4LRU with a configurable number of segments).

    New keys enter segment 0. A hit promotes a key to the next higher segment;
    a segment over its share of capacity demotes its least recent key to the
    segment below. Eviction takes the least recent key of the lowest
    non-empty segment, so keys hit repeatedly survive scans.
    """

    total_capacity: int
    num_segments: int = 4
    segments: list[OrderedDict[CacheKeyBytes, None]] = field(default_factory=list)
    key_to_segment: dict[CacheKeyBytes, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.num_segments < 1:
            raise ValueError("num_segments must be positive")
        self.segments = [OrderedDict() for _ in range(self.num_segments)]

    @property
    def segment_capacity(self) -> int:
        return max(1, self.total_capacity // self.num_segments)

    def _place(self, key: CacheKeyBytes, level: int) -> None:
        segment = self.segments[level]
        segment[key] = None
        segment.move_to_end(key)
        self.key_to_segment[key] = level
        # Demote overflow down the segment chain; segment 0 may exceed its share
        # until the local tier evicts.
        while level > 0 and len(self.segments[level]) > self.segment_capacity:
            demoted, _ = self.segments[level].popitem(last=False)
            level -= 1
            self.segments[level][demoted] = None
            self.key_to_segment[demoted] = level

    def on_access(self, key: CacheKeyBytes) -> None:
        level = self.key_to_segment.get(key)
        if level is None:
            return
        del self.segments[level][key]
        self._place(key, min(level + 1, self.num_segments - 1))

    def on_insert(self, key: CacheKeyBytes, expires_at: Timestamp | None = None) -> None:
        if key in self.key_to_segment:
            self.on_access(key)
            return
        self._place(key, 0)

    def on_remove(self, key: CacheKeyBytes) -> None:
        level = self.key_to_segment.pop(key, None)
        if level is not None:
            self.segments[level].pop(key, None)

    def eviction_candidate(self) -> CacheKeyBytes | None:
        for segment in self.segments:
            if segment:
                return next(iter(segment))
        return None

    def segment_sizes(self) -> list[int]:
        return [len(segment) for segment in self.segments]

    def clear(self) -> None:
        for segment in self.segments:
            segment.clear()
        self.key_to_segment.clear()


def create_strategy(
    policy: EvictionPolicy | str,
    capacity: int | None = None,
    segments: int = 4,
) -> EvictionStrategy:
    """Build the strategy for a named policy."""
    match EvictionPolicy(policy):
        case EvictionPolicy.LRU:
            return LRUStrategy()
        case EvictionPolicy.LFU:
            return LFUStrategy()
        case EvictionPolicy.TTL:
            return TTLStrategy()
        case EvictionPolicy.S4LRU:
            return SegmentedLRUStrategy(
                total_capacity=capacity or 10_000, num_segments=segments
            )
