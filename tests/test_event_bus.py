from __future__ import annotations

import asyncio

import pytest

from codemonitor.adapters.event_bus import EventBus
from codemonitor.adapters.events import (
    ApprovalRequested,
    Notification,
    SessionStatusChanged,
    dict_to_event,
    event_to_dict,
)


def _status(n: int) -> SessionStatusChanged:
    return SessionStatusChanged(
        workspace_id="w", session_id=f"s{n}", old_status="running", new_status="failed",
    )


class TestEventBus:
    def test_fan_out(self):
        bus = EventBus()
        first, second = bus.subscribe(), bus.subscribe()
        bus.publish(_status(1))
        assert [e.session_id for e in first.pending()] == ["s1"]
        assert [e.session_id for e in second.pending()] == ["s1"]

    def test_slow_consumer_drops_oldest(self):
        bus = EventBus(maxsize=3)
        subscription = bus.subscribe()
        for n in range(5):
            bus.publish(_status(n))
        assert [e.session_id for e in subscription.pending()] == ["s2", "s3", "s4"]
        assert subscription.dropped == 2

    def test_close_unsubscribes(self):
        bus = EventBus()
        subscription = bus.subscribe()
        subscription.close()
        assert subscription.closed
        assert bus.subscriber_count == 0
        bus.publish(_status(1))
        assert subscription.pending() == []

    @pytest.mark.asyncio
    async def test_get_waits_for_publish(self):
        bus = EventBus()
        subscription = bus.subscribe()
        loop = asyncio.get_running_loop()
        loop.call_later(0.02, bus.publish, _status(7))
        event = await subscription.get(timeout=1.0)
        assert event.session_id == "s7"
        assert await subscription.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_bus_close_ends_iteration(self):
        bus = EventBus()
        subscription = bus.subscribe()
        bus.publish(_status(1))

        async def consume():
            return [e.session_id async for e in subscription]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        bus.close()
        assert await asyncio.wait_for(task, 2.0) == ["s1"]
        bus.publish(_status(2))
        assert subscription.pending() == []


class TestNotificationDicts:
    def test_to_dict_uses_event_key(self):
        data = event_to_dict(_status(1))
        assert data["event"] == "session_status_changed"
        assert "event_type" not in data
        assert "reason" not in data

    def test_from_dict(self):
        event = dict_to_event({
            "event": "approval_requested",
            "workspace_id": "w",
            "session_id": "s",
            "request_id": "r",
            "action": {"type": "bash"},
            "extra": "ignored",
        })
        assert isinstance(event, ApprovalRequested)
        assert event.action == {"type": "bash"}

    def test_unknown_type(self):
        event = dict_to_event({"event": "something_new", "workspace_id": "w"})
        assert type(event) is Notification
        assert event.event_type == "something_new"
