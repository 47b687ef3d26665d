"""In-process publish/subscribe for lifecycle events."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from kai.infrastructure.config import EVENT_QUEUE_SIZE
from kai.infrastructure.logger import logger
from kai.services.types import Event


class Subscription:
    """One subscriber's bounded queue. Iterate it or call get()."""

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: Event) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning("Event queue full, dropped oldest event", dropped=self.dropped)
        self.queue.put_nowait(event)

    async def get(self) -> Event:
        return await self.queue.get()

    def get_nowait(self) -> Event:
        return self.queue.get_nowait()

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        return await self.queue.get()


class EventBus:
    def __init__(self, queue_size: int = EVENT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, queue_size: int | None = None) -> Subscription:
        sub = Subscription(self, queue_size or self._queue_size)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, event: Event) -> None:
        """Deliver to every subscriber without blocking the publisher."""
        for sub in list(self._subscribers):
            sub.offer(event)
