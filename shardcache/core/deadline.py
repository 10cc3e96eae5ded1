"""Caller deadlines and retry backoff for shared-tier round trips."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass

from shardcache.datastructures.type_aliases import DurationSeconds

from .config import SharedTierSettings


@dataclass(frozen=True, slots=True)
class Deadline:
    """Absolute point on the monotonic clock by which a request must finish."""

    expires_at: float

    @classmethod
    def in_(cls, seconds: DurationSeconds) -> Deadline:
        return cls(expires_at=time.monotonic() + seconds)

    def remaining(self) -> DurationSeconds:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def cap(self, seconds: DurationSeconds) -> DurationSeconds:
        """`seconds`, shortened so a wait never runs past the deadline."""
        return min(seconds, self.remaining())


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with symmetric jitter."""

    max_attempts: int = 3
    initial_delay_seconds: float = 0.01
    max_delay_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    @classmethod
    def from_settings(cls, settings: SharedTierSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_attempts,
            initial_delay_seconds=settings.retry_initial_delay,
            max_delay_seconds=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter_factor=settings.retry_jitter,
        )

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Sleep before retry number `attempt` (0-based)."""
        delay = min(
            self.initial_delay_seconds * (self.backoff_multiplier**attempt),
            self.max_delay_seconds,
        )
        source = rng or random
        jitter = source.uniform(-self.jitter_factor, self.jitter_factor)
        return max(0.0, delay * (1 + jitter))
