"""
Broadcast channel for analyzer notifications.

The multiplexer publishes every unsolicited notification once; each
subscriber owns an unbounded queue and consumes at its own pace, so a slow
consumer never blocks the read loop or another subscriber.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from mcplsp.protocol import Notification

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """One subscriber's view of the bus; iterate it with ``async for``."""

    def __init__(self, bus: 'NotificationBus', methods: frozenset[str] | None):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self.methods = methods

    def _offer(self, item) -> None:
        if item is _CLOSED or self.methods is None or item.method in self.methods:
            self._queue.put_nowait(item)

    async def get(self) -> Notification | None:
        """Next notification, or None once the bus is closed."""
        item = await self._queue.get()
        return None if item is _CLOSED else item

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self.get()
            if item is None:
                return
            yield item

    def close(self) -> None:
        self._bus._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)


class NotificationBus:
    def __init__(self):
        self._subscribers: list[Subscription] = []
        self._closed = False

    def subscribe(self, *methods: str) -> Subscription:
        """Subscribe to *methods* (all notifications when none are given)."""
        sub = Subscription(self, frozenset(methods) if methods else None)
        if self._closed:
            sub._offer(_CLOSED)
        else:
            self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, notification: Notification) -> None:
        if self._closed:
            logger.debug('bus closed; dropping %s', notification.method)
            return
        for sub in list(self._subscribers):
            sub._offer(notification)

    def close(self) -> None:
        """Wake every subscriber with end-of-stream."""
        if self._closed:
            return
        self._closed = True
        for sub in self._subscribers:
            sub._offer(_CLOSED)
        self._subscribers.clear()
