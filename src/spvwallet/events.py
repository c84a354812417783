"""
Wallet notifications and observer subscriptions.

Events are discrete notifications, not retryable operations. Every
subscription owns a FIFO queue drained by its own task, so a slow or failing
observer never blocks the sync engine and delivery order is preserved per
subscription.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Union

from loguru import logger


@dataclass(frozen=True)
class PeerConnected:
    peer_id: str
    peer_count: int


@dataclass(frozen=True)
class PeerDisconnected:
    peer_id: str
    peer_count: int


@dataclass(frozen=True)
class PeersExhausted:
    attempted: int


@dataclass(frozen=True)
class BlockReceived:
    block_hash: str
    height: int
    blocks_remaining: int


@dataclass(frozen=True)
class SyncComplete:
    height: int


@dataclass(frozen=True)
class CoinsReceived:
    txid: str
    amount: int
    new_balance: int


@dataclass(frozen=True)
class CoinsSent:
    txid: str
    amount: int
    new_balance: int


@dataclass(frozen=True)
class ShutdownTimedOut:
    pending_tasks: int
    grace_period: float


WalletEvent = Union[
    PeerConnected,
    PeerDisconnected,
    PeersExhausted,
    BlockReceived,
    SyncComplete,
    CoinsReceived,
    CoinsSent,
    ShutdownTimedOut,
]

EventCallback = Callable[[WalletEvent], Union[None, Awaitable[None]]]


class Subscription:
    _ids = itertools.count(1)

    def __init__(
        self,
        bus: EventBus,
        callback: EventCallback,
        event_types: tuple[type, ...],
    ):
        self.id = next(self._ids)
        self.callback = callback
        self.event_types = event_types
        self._bus = bus
        self._queue: asyncio.Queue[WalletEvent] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self.active = True

    def wants(self, event: WalletEvent) -> bool:
        return not self.event_types or isinstance(event, self.event_types)

    def deliver(self, event: WalletEvent) -> None:
        if not self.active:
            return
        self._queue.put_nowait(event)
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                result = self.callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Subscriber {self.id} failed handling {type(event).__name__}")
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    def cancel(self) -> None:
        """Detach this subscription; queued but undelivered events are dropped."""
        if not self.active:
            return
        self.active = False
        self._bus._remove(self)
        if self._task is not None:
            self._task.cancel()
            self._task = None


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, callback: EventCallback, *event_types: type) -> Subscription:
        """Register an observer for the given event types (all events when none given)."""
        subscription = Subscription(self, callback, event_types)
        self._subscriptions.append(subscription)
        logger.debug(
            f"Subscription {subscription.id} registered for "
            f"{[t.__name__ for t in event_types] or 'all events'}"
        )
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: WalletEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription.deliver(event)

    async def drain(self) -> None:
        """Wait for all subscribers to process what has been published so far."""
        await asyncio.gather(*(s.join() for s in list(self._subscriptions)))

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()

    def __len__(self) -> int:
        return len(self._subscriptions)
