"""
Stampede protection for cold and expiring keys.

Per key the shared tier moves through ABSENT -> LEASED -> POPULATED and back
to ABSENT on expiry. Two layers keep the loader to one call per cold key:

1. Single flight inside a process: concurrent misses for a key await one
   future, so one caller per process races for the lease.
2. A lease record on the key's shard across processes: the process whose
   conditional create wins calls the loader; the others poll the shared tier
   until the entry, a failure record, or lease expiry shows up.

Early refresh reuses the same lease record, so a background refresh and a
hard miss can never both recompute a key.
"""

from __future__ import annotations

import asyncio
import math
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import ulid
from loguru import logger

from shardcache.datastructures.cache_records import (
    NEGATIVE_MARKER,
    NOT_FOUND,
    CacheEntry,
    Lease,
    NotFound,
    StoredValue,
    key_repr,
)
from shardcache.datastructures.type_aliases import (
    CacheKeyBytes,
    EncodedValue,
    HolderId,
    ProcessId,
    Timestamp,
)

from .config import StampedeSettings
from .deadline import Deadline
from .errors import DeadlineExceeded, LeaseTimeout, LoaderError, TransportError
from .local_tier import ObservedVersion
from .shared_tier import SharedTierClient
from .task_manager import ManagedObject

type EncodedLoader = Callable[[CacheKeyBytes], Awaitable[EncodedValue | NotFound]]


@dataclass(frozen=True, slots=True)
class LoadOutcome:
    """Result of a guarded load.

    `entry` is None when the value was served without being cached, which
    happens when a delete landed while the lease holder was recomputing.
    """

    value: StoredValue
    entry: CacheEntry | None


@dataclass(slots=True)
class StampedeStatistics:
    flights: int = 0
    coalesced: int = 0
    leases_won: int = 0
    lease_contention: int = 0
    lease_timeouts: int = 0
    remote_populations: int = 0
    loads: int = 0
    load_failures: int = 0
    remote_failures: int = 0
    stale_leases: int = 0
    early_refreshes: int = 0
    refreshes_skipped: int = 0


def _admitted(entry: CacheEntry, observed: ObservedVersion | None) -> bool:
    return observed is None or observed.admits(entry.version)


def _write_floor(observed: ObservedVersion | None) -> int:
    return 0 if observed is None else observed.version + 1


class StampedeGuard(ManagedObject):
    """Coalesces recomputes of a key within and across processes."""

    def __init__(
        self,
        shared: SharedTierClient,
        settings: StampedeSettings | None = None,
        *,
        process_id: ProcessId = "-",
        clock: Callable[[], Timestamp] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(name=f"StampedeGuard-{process_id}")
        self.shared = shared
        self.settings = settings or StampedeSettings()
        self.process_id = process_id
        self.clock = clock
        self.rng = rng or random.Random()
        self.statistics = StampedeStatistics()
        self._flights: dict[CacheKeyBytes, asyncio.Future[LoadOutcome]] = {}
        self._refreshing: set[CacheKeyBytes] = set()

    def new_holder_id(self) -> HolderId:
        return f"{self.process_id}/{ulid.new()}"

    def in_flight(self, key: CacheKeyBytes) -> bool:
        return key in self._flights

    async def load(
        self,
        key: CacheKeyBytes,
        loader: EncodedLoader,
        deadline: Deadline,
        *,
        observed: ObservedVersion | None = None,
    ) -> LoadOutcome:
        """Resolve a miss on `key`, calling `loader` at most once across the fleet.

        Raises LoaderError when the recompute failed (locally or in the
        process holding the lease) and DeadlineExceeded when `deadline`
        passes first.
        """
        flight = self._flights.get(key)
        if flight is None:
            flight = asyncio.get_running_loop().create_future()
            # Mark the result retrieved even if every waiter gave up.
            flight.add_done_callback(
                lambda f: None if f.cancelled() else f.exception()
            )
            self._flights[key] = flight
            self.statistics.flights += 1
            # Each waiter enforces its own deadline below; the flight runs
            # for at least one lease timeout whoever started it.
            flight_deadline = Deadline.in_(
                max(deadline.remaining(), self.settings.lease_timeout)
            )
            self.create_task(
                self._fly(key, loader, flight_deadline, observed, flight),
                name=f"flight-{key_repr(key)}",
            )
        else:
            self.statistics.coalesced += 1

        try:
            return await asyncio.wait_for(
                asyncio.shield(flight), deadline.remaining()
            )
        except TimeoutError:
            raise DeadlineExceeded(key, "stampede wait") from None

    async def _fly(
        self,
        key: CacheKeyBytes,
        loader: EncodedLoader,
        deadline: Deadline,
        observed: ObservedVersion | None,
        flight: asyncio.Future[LoadOutcome],
    ) -> None:
        try:
            outcome = await self._resolve(key, loader, deadline, observed)
        except asyncio.CancelledError:
            flight.cancel()
            raise
        except Exception as e:
            flight.set_exception(e)
        else:
            flight.set_result(outcome)
        finally:
            if self._flights.get(key) is flight:
                del self._flights[key]

    async def _resolve(
        self,
        key: CacheKeyBytes,
        loader: EncodedLoader,
        deadline: Deadline,
        observed: ObservedVersion | None,
    ) -> LoadOutcome:
        wait_started = self.clock()
        contended = False
        while True:
            if deadline.expired:
                raise DeadlineExceeded(key, "lease acquisition")
            lease = await self.shared.acquire_lease(
                key,
                self.new_holder_id(),
                self.settings.lease_timeout,
                deadline=deadline,
            )
            if lease is not None:
                self.statistics.leases_won += 1
                return await self._populate(
                    key, loader, lease, observed, recheck=True
                )

            if not contended:
                contended = True
                self.statistics.lease_contention += 1
            outcome = await self._await_winner(key, deadline, wait_started, observed)
            if outcome is not None:
                self.statistics.remote_populations += 1
                return outcome

    async def _await_winner(
        self,
        key: CacheKeyBytes,
        deadline: Deadline,
        wait_started: Timestamp,
        observed: ObservedVersion | None,
    ) -> LoadOutcome | None:
        """Poll until another process populates `key`.

        Returns None when the lease went away without a usable entry, in
        which case the caller races for the lease again.
        """
        interval = self.settings.poll_interval
        last_lease: Lease | None = None
        while True:
            entry, found = await self.shared.get(key, deadline=deadline)
            if found and _admitted(entry, observed):
                return LoadOutcome(value=entry.value, entry=entry)

            failure = await self.shared.read_failure(key, deadline=deadline)
            if failure is not None and failure.failed_at >= wait_started:
                self.statistics.remote_failures += 1
                raise LoaderError(key, failure.message, remote=True)

            lease = await self.shared.read_lease(key, deadline=deadline)
            if lease is None:
                # The holder may have populated and released between reads.
                entry, found = await self.shared.get(key, deadline=deadline)
                if found and _admitted(entry, observed):
                    return LoadOutcome(value=entry.value, entry=entry)
                if last_lease is not None and last_lease.is_expired(self.clock()):
                    self.statistics.lease_timeouts += 1
                    logger.warning(str(LeaseTimeout(key, last_lease.holder_id)))
                return None
            last_lease = lease

            if deadline.expired:
                raise DeadlineExceeded(key, "lease wait")
            pause = min(interval, lease.remaining(self.clock()))
            await asyncio.sleep(deadline.cap(max(pause, 0.001)))
            interval = min(interval * 2, self.settings.poll_max_interval)

    async def _populate(
        self,
        key: CacheKeyBytes,
        loader: EncodedLoader,
        lease: Lease,
        observed: ObservedVersion | None,
        *,
        recheck: bool,
    ) -> LoadOutcome:
        released = False
        try:
            if recheck:
                # Another holder may have populated just before we won.
                entry, found = await self.shared.get(key)
                if found and _admitted(entry, observed):
                    return LoadOutcome(value=entry.value, entry=entry)
            await self.shared.clear_failure(key)

            self.statistics.loads += 1
            try:
                value = await loader(key)
            except Exception as e:
                self.statistics.load_failures += 1
                message = str(e) or type(e).__name__
                await self._share_failure(key, lease, message)
                await self._release(lease)
                released = True
                raise LoaderError(key, message) from e

            stored: StoredValue = NEGATIVE_MARKER if value is NOT_FOUND else value
            try:
                epoch = await self.shared.delete_epoch(key)
                if epoch != lease.write_epoch:
                    self.statistics.stale_leases += 1
                    logger.info(
                        f"Lease on {key_repr(key)} went stale "
                        f"(delete epoch {lease.write_epoch} -> {epoch}); not caching"
                    )
                    return LoadOutcome(value=stored, entry=None)

                floor = _write_floor(observed)
                if stored is NEGATIVE_MARKER:
                    entry = await self.shared.set_negative(key, min_version=floor)
                else:
                    entry = await self.shared.set(key, stored, min_version=floor)
            except TransportError as e:
                # The value is good; only caching it failed.
                logger.warning(f"Loaded {key_repr(key)} but could not cache it: {e}")
                return LoadOutcome(value=stored, entry=None)
            logger.debug(f"Populated {key_repr(key)} v{entry.version}")
            return LoadOutcome(value=entry.value, entry=entry)
        finally:
            if not released:
                await self._release(lease)

    async def _share_failure(
        self, key: CacheKeyBytes, lease: Lease, message: str
    ) -> None:
        try:
            await self.shared.record_failure(key, lease.holder_id, message)
        except TransportError as e:
            logger.warning(f"Could not share loader failure for {key_repr(key)}: {e}")

    async def _release(self, lease: Lease) -> None:
        try:
            await self.shared.release_lease(lease)
        except TransportError as e:
            logger.warning(
                f"Lease on {key_repr(lease.key)} not released, expires in "
                f"{lease.remaining(self.clock()):.1f}s: {e}"
            )

    def should_refresh_early(
        self, entry: CacheEntry, now: Timestamp | None = None
    ) -> bool:
        """Draw whether a hit on `entry` should trigger a background refresh.

        P(refresh) = exp(-beta * remaining_ttl / requested_ttl): near zero for
        a fresh entry, approaching one as it nears expiry.
        """
        if not self.settings.early_refresh_enabled:
            return False
        requested = entry.requested_ttl
        if requested <= 0:
            return False
        current = self.clock() if now is None else now
        remaining = entry.remaining_ttl(current)
        probability = math.exp(
            -self.settings.early_refresh_beta * remaining / requested
        )
        return self.rng.random() < probability

    def schedule_refresh(
        self,
        key: CacheKeyBytes,
        loader: EncodedLoader,
        *,
        observed: ObservedVersion | None = None,
    ) -> bool:
        """Start a background refresh of `key` unless one is already running."""
        if key in self._refreshing or key in self._flights:
            return False
        if self._task_manager.shutdown_requested:
            return False
        self._refreshing.add(key)
        self.create_task(
            self._refresh(key, loader, observed), name=f"refresh-{key_repr(key)}"
        )
        return True

    async def _refresh(
        self,
        key: CacheKeyBytes,
        loader: EncodedLoader,
        observed: ObservedVersion | None,
    ) -> None:
        try:
            lease = await self.shared.acquire_lease(
                key, self.new_holder_id(), self.settings.lease_timeout
            )
            if lease is None:
                self.statistics.refreshes_skipped += 1
                logger.debug(f"Early refresh of {key_repr(key)} skipped: lease held")
                return
            self.statistics.early_refreshes += 1
            await self._populate(key, loader, lease, observed, recheck=False)
        except (LoaderError, TransportError) as e:
            logger.warning(f"Early refresh of {key_repr(key)} failed: {e}")
        finally:
            self._refreshing.discard(key)

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait for in-flight loads and refreshes to finish."""
        await self._task_manager.wait_idle(timeout)
