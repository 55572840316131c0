"""Tests for mcplsp.bus: notification fan-out."""
from __future__ import annotations

import asyncio

import pytest

from mcplsp.bus import NotificationBus
from mcplsp.protocol import Notification


class TestNotificationBus:
    @pytest.mark.asyncio
    async def test_every_subscriber_gets_each_notification(self):
        bus = NotificationBus()
        a, b = bus.subscribe(), bus.subscribe()
        note = Notification(method='window/logMessage', params={'type': 3, 'message': 'hi'})
        bus.publish(note)
        assert await a.get() is note
        assert await b.get() is note

    @pytest.mark.asyncio
    async def test_method_filter(self):
        bus = NotificationBus()
        sub = bus.subscribe('textDocument/publishDiagnostics')
        bus.publish(Notification(method='window/logMessage'))
        bus.publish(Notification(method='textDocument/publishDiagnostics'))
        got = await asyncio.wait_for(sub.get(), 1.0)
        assert got.method == 'textDocument/publishDiagnostics'

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        bus = NotificationBus()
        sub = bus.subscribe()
        bus.publish(Notification(method='a'))
        bus.close()
        seen = [n.method async for n in sub]
        assert seen == ['a']

    @pytest.mark.asyncio
    async def test_subscribe_after_close_is_already_finished(self):
        bus = NotificationBus()
        bus.close()
        assert await bus.subscribe().get() is None

    @pytest.mark.asyncio
    async def test_closed_subscription_stops_receiving(self):
        bus = NotificationBus()
        sub = bus.subscribe()
        sub.close()
        bus.publish(Notification(method='a'))
        assert await sub.get() is None
