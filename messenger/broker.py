"""Publish/subscribe transport used by the delivery router."""

from __future__ import annotations

import abc
import asyncio
import threading
from typing import AsyncIterator, Dict, Set, Tuple

import structlog

logger = structlog.get_logger(__name__)


class Subscription(abc.ABC):
    """One consumer's view of the broker: a set of channels and one inbox."""

    @abc.abstractmethod
    async def subscribe(self, *channels: str) -> None:
        ...

    @abc.abstractmethod
    async def unsubscribe(self, *channels: str) -> None:
        ...

    @property
    @abc.abstractmethod
    def channels(self) -> Set[str]:
        ...

    @abc.abstractmethod
    def __aiter__(self) -> AsyncIterator[Tuple[str, str]]:
        """Yield ``(channel, message)`` pairs in delivery order."""
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class Broker(abc.ABC):
    @abc.abstractmethod
    async def publish(self, channel: str, message: str) -> None:
        ...

    @abc.abstractmethod
    def subscription(self) -> Subscription:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class InMemorySubscription(Subscription):
    def __init__(self, broker: "InMemoryBroker", maxsize: int):
        self._broker = broker
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._channels: Set[str] = set()
        self._closed = False

    @property
    def channels(self) -> Set[str]:
        return set(self._channels)

    async def subscribe(self, *channels: str) -> None:
        self._channels.update(channels)
        self._broker._register(self, channels)

    async def unsubscribe(self, *channels: str) -> None:
        self._channels.difference_update(channels)
        self._broker._unregister(self, channels)

    def deliver(self, channel: str, message: str) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait((channel, message))
        except asyncio.QueueFull:
            logger.warning("subscriber_queue_full", channel=channel)

    async def __aiter__(self):
        while not self._closed:
            item = await self._queue.get()
            if item is None:
                break
            yield item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker._unregister(self, tuple(self._channels))
        self._channels.clear()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


class InMemoryBroker(Broker):
    """Single-process broker.

    The channel registry is shared between publishers and connections that
    (un)subscribe concurrently, so every access goes through ``_lock``.
    Each subscription has one FIFO queue: a subscriber sees messages in the
    order they were published.
    """

    def __init__(self, queue_size: int = 1000):
        self._queue_size = queue_size
        self._channels: Dict[str, Set[InMemorySubscription]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _register(self, sub: InMemorySubscription, channels):
        with self._lock:
            for channel in channels:
                self._channels.setdefault(channel, set()).add(sub)

    def _unregister(self, sub: InMemorySubscription, channels):
        with self._lock:
            for channel in channels:
                subs = self._channels.get(channel)
                if subs is None:
                    continue
                subs.discard(sub)
                if not subs:
                    del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, ()))

    async def publish(self, channel: str, message: str) -> None:
        if self._closed:
            return
        with self._lock:
            subs = list(self._channels.get(channel, ()))
        for sub in subs:
            sub.deliver(channel, message)

    def subscription(self) -> InMemorySubscription:
        return InMemorySubscription(self, self._queue_size)

    async def close(self) -> None:
        self._closed = True
        with self._lock:
            subs = {s for group in self._channels.values() for s in group}
            self._channels.clear()
        for sub in subs:
            await sub.close()
