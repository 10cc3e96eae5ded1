"""
Invalidation fan-out between processes.

Every shared-tier write publishes an InvalidationEvent; each process runs one
InvalidationBus that receives events from the transport and hands them to
its subscribers (normally the local tier). Delivery is at-least-once and is
never trusted alone: subscribers reject stale versions and local TTLs bound
the damage of lost events. After a transport gap, subscribers are told so
they can treat their local state as unknown.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import ulid
from loguru import logger

from shardcache.datastructures.cache_records import InvalidationEvent, key_repr
from shardcache.datastructures.type_aliases import (
    CacheKeyBytes,
    ProcessId,
    SubscriptionId,
)

from .errors import TransportError
from .task_manager import ManagedObject

type InvalidationHandler = Callable[[InvalidationEvent], Awaitable[None] | None]
type GapHandler = Callable[[], Awaitable[None] | None]


class BusSignal(Enum):
    """Out-of-band items a connection can receive."""

    GAP = "gap"  # events may have been lost while disconnected


@dataclass(slots=True)
class TransportConnection:
    """One process's attachment to the invalidation transport."""

    process_id: ProcessId
    queue: asyncio.Queue[InvalidationEvent | BusSignal]
    connected: bool = True
    missed_events: int = 0


class InvalidationTransport(Protocol):
    """Ordered-per-connection publish/subscribe channel."""

    def connect(self, process_id: ProcessId, queue_size: int) -> TransportConnection: ...

    def detach(self, process_id: ProcessId) -> None: ...

    async def publish(self, event: InvalidationEvent) -> None: ...


class MemoryInvalidationHub:
    """
    In-process invalidation transport shared by simulated processes.

    Each connection has a FIFO queue, so events from one publisher arrive in
    publish order. Tests can silence delivery entirely (`delivery_enabled`),
    or disconnect a single process and reconnect it later; a reconnect after
    missed events enqueues a GAP signal.
    """

    def __init__(self) -> None:
        self.connections: dict[ProcessId, TransportConnection] = {}
        self.delivery_enabled = True
        self.published = 0
        self.dropped = 0

    def connect(self, process_id: ProcessId, queue_size: int) -> TransportConnection:
        connection = TransportConnection(
            process_id=process_id, queue=asyncio.Queue(maxsize=queue_size)
        )
        self.connections[process_id] = connection
        return connection

    def detach(self, process_id: ProcessId) -> None:
        self.connections.pop(process_id, None)

    def disconnect(self, process_id: ProcessId) -> None:
        self.connections[process_id].connected = False
        logger.info(f"Invalidation hub: {process_id} disconnected")

    def reconnect(self, process_id: ProcessId) -> None:
        connection = self.connections[process_id]
        connection.connected = True
        if connection.missed_events:
            logger.info(
                f"Invalidation hub: {process_id} reconnected after missing "
                f"{connection.missed_events} events"
            )
            connection.missed_events = 0
            self._enqueue_signal(connection, BusSignal.GAP)

    def _enqueue_signal(self, connection: TransportConnection, signal: BusSignal) -> None:
        try:
            connection.queue.put_nowait(signal)
        except asyncio.QueueFull:
            # A full queue is itself a gap; the subscriber will catch up via TTLs.
            connection.missed_events += 1

    async def publish(self, event: InvalidationEvent) -> None:
        sender = self.connections.get(event.origin)
        if sender is not None and not sender.connected:
            raise TransportError(f"{event.origin} is disconnected from the bus")
        self.published += 1
        if not self.delivery_enabled:
            self.dropped += len(self.connections)
            return
        for connection in self.connections.values():
            if not connection.connected:
                connection.missed_events += 1
                continue
            try:
                connection.queue.put_nowait(event)
            except asyncio.QueueFull:
                connection.missed_events += 1
                self.dropped += 1


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    subscription_id: SubscriptionId
    prefix: CacheKeyBytes = b""


@dataclass(slots=True)
class _Subscription:
    handle: SubscriptionHandle
    handler: InvalidationHandler
    on_gap: GapHandler | None = None


@dataclass(slots=True)
class InvalidationBusStatistics:
    published: int = 0
    publish_failures: int = 0
    received: int = 0
    delivered: int = 0
    handler_errors: int = 0
    gaps: int = 0


async def _maybe_await(result: Awaitable[None] | None) -> None:
    if inspect.isawaitable(result):
        await result


class InvalidationBus(ManagedObject):
    """Per-process publish/subscribe endpoint for invalidation events."""

    def __init__(
        self,
        transport: InvalidationTransport,
        process_id: ProcessId,
        *,
        queue_size: int = 10_000,
    ) -> None:
        super().__init__(name=f"InvalidationBus-{process_id}")
        self.transport = transport
        self.process_id = process_id
        self.queue_size = queue_size
        self.statistics = InvalidationBusStatistics()
        self._subscriptions: dict[SubscriptionId, _Subscription] = {}
        self._sequence = itertools.count(1)
        self._connection: TransportConnection | None = None

    @property
    def running(self) -> bool:
        return self._connection is not None

    async def start(self) -> None:
        if self._connection is not None:
            return
        self._connection = self.transport.connect(self.process_id, self.queue_size)
        self.create_task(self._delivery_loop(), name=f"bus-delivery-{self.process_id}")
        logger.debug(f"Invalidation bus started for {self.process_id}")

    async def stop(self) -> None:
        if self._connection is None:
            return
        self.transport.detach(self.process_id)
        self._connection = None
        await self.shutdown()

    def subscribe(
        self,
        handler: InvalidationHandler,
        *,
        prefix: CacheKeyBytes = b"",
        on_gap: GapHandler | None = None,
    ) -> SubscriptionHandle:
        """Register `handler` for events whose key starts with `prefix`."""
        handle = SubscriptionHandle(subscription_id=str(ulid.new()), prefix=prefix)
        self._subscriptions[handle.subscription_id] = _Subscription(
            handle=handle, handler=handler, on_gap=on_gap
        )
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        return self._subscriptions.pop(handle.subscription_id, None) is not None

    async def publish(self, event: InvalidationEvent) -> InvalidationEvent:
        """Stamp `event` with this publisher's identity and sequence, then send it."""
        stamped = dataclasses.replace(
            event, origin=self.process_id, sequence=next(self._sequence)
        )
        try:
            await self.transport.publish(stamped)
        except TransportError:
            self.statistics.publish_failures += 1
            raise
        self.statistics.published += 1
        return stamped

    async def flush(self) -> None:
        """Wait until every event received so far has been handled."""
        if self._connection is not None:
            await self._connection.queue.join()

    async def _delivery_loop(self) -> None:
        connection = self._connection
        assert connection is not None
        while True:
            item = await connection.queue.get()
            try:
                if item is BusSignal.GAP:
                    await self._dispatch_gap()
                else:
                    await self._dispatch(item)
            finally:
                connection.queue.task_done()

    async def _dispatch(self, event: InvalidationEvent) -> None:
        self.statistics.received += 1
        for subscription in list(self._subscriptions.values()):
            if not event.key.startswith(subscription.handle.prefix):
                continue
            try:
                await _maybe_await(subscription.handler(event))
                self.statistics.delivered += 1
            except Exception as e:
                self.statistics.handler_errors += 1
                logger.error(
                    f"Invalidation handler failed for {key_repr(event.key)} "
                    f"v{event.source_version}: {e!r}"
                )

    async def _dispatch_gap(self) -> None:
        self.statistics.gaps += 1
        logger.warning(
            f"Invalidation gap detected for {self.process_id}; local state is unknown"
        )
        for subscription in list(self._subscriptions.values()):
            if subscription.on_gap is None:
                continue
            try:
                await _maybe_await(subscription.on_gap())
            except Exception as e:
                self.statistics.handler_errors += 1
                logger.error(f"Invalidation gap handler failed: {e!r}")
