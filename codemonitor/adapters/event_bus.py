"""Async notification bus bridging the orchestration core to UI consumers.

The core publishes from many session pumps at once; each UI consumer
owns a bounded queue. When a consumer falls behind, the oldest queued
notification is dropped to make room: notifications are hints, and the
session log remains the authoritative record to re-sync from.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from .events import Notification

logger = logging.getLogger(__name__)


class NotificationSubscription:
    """One consumer's bounded view of the bus."""

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    def _offer(self, event: Notification) -> None:
        if self._closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(
                    "Notification consumer lagging; dropped %d (queue size: %d)",
                    self.dropped, self._queue.maxsize,
                )
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> Notification | None:
        """Next notification, or None on timeout/close."""
        if self._closed and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> list[Notification]:
        """Drain without waiting."""
        items: list[Notification] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Notification]:
        while not self._closed:
            event = await self.get(timeout=0.5)
            if event is not None:
                yield event

    def close(self) -> None:
        self._closed = True
        self._bus._remove(self)


class EventBus:
    """Fan-out of notifications to every open subscription."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._subscribers: list[NotificationSubscription] = []
        self._closed = False

    def subscribe(self) -> NotificationSubscription:
        subscription = NotificationSubscription(self, self._maxsize)
        self._subscribers.append(subscription)
        return subscription

    def _remove(self, subscription: NotificationSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: Notification) -> None:
        """Deliver to every subscriber without blocking the publisher."""
        if self._closed:
            return
        for subscription in list(self._subscribers):
            subscription._offer(event)

    def close(self) -> None:
        """Stop delivery and close all subscriptions."""
        self._closed = True
        for subscription in list(self._subscribers):
            subscription.close()
