"""Tests for the event bus and the permission broker."""

import asyncio

import pytest

from kai.services.events import EventBus
from kai.services.permission import AutoApprove, PermissionBroker
from kai.services.types import ImageDownloadPermissionRequest, ServiceEvent


def _event(i: int) -> ServiceEvent:
    return ServiceEvent(service_name="backend", event_type="image-pulling-progress", data={"percent": i})


class TestEventBus:
    def test_every_subscriber_receives(self):
        bus = EventBus()
        a, b = bus.subscribe(), bus.subscribe()
        bus.publish(_event(1))
        assert a.get_nowait().data == {"percent": 1}
        assert b.get_nowait().data == {"percent": 1}

    def test_full_queue_drops_oldest(self):
        bus = EventBus(queue_size=2)
        sub = bus.subscribe()
        for i in range(3):
            bus.publish(_event(i))
        assert [e.data["percent"] for e in sub.drain()] == [1, 2]
        assert sub.dropped == 1

    def test_closed_subscription_stops_receiving(self):
        bus = EventBus()
        sub = bus.subscribe()
        sub.close()
        bus.publish(_event(1))
        assert sub.drain() == []
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        bus = EventBus()
        sub = bus.subscribe()
        bus.publish(_event(7))
        async for event in sub:
            assert event.data["percent"] == 7
            break


class TestPermissionBroker:
    @pytest.mark.asyncio
    async def test_granted(self):
        bus = EventBus()
        sub = bus.subscribe()
        broker = PermissionBroker(bus, timeout_s=1)

        task = asyncio.create_task(broker.request("backend", "kai-backend:latest"))
        request = await sub.get()
        assert isinstance(request, ImageDownloadPermissionRequest)
        assert request.image_name == "kai-backend:latest"

        assert broker.respond(request.id, True) is True
        assert await task is True
        assert broker.pending == []

    @pytest.mark.asyncio
    async def test_denied(self):
        bus = EventBus()
        sub = bus.subscribe()
        broker = PermissionBroker(bus, timeout_s=1)

        task = asyncio.create_task(broker.request("neo4j", "neo4j:5-community"))
        request = await sub.get()
        broker.respond(request.id, False)
        assert await task is False

    @pytest.mark.asyncio
    async def test_timeout_is_denial(self):
        broker = PermissionBroker(EventBus(), timeout_s=0.05)
        assert await broker.request("qdrant", "qdrant/qdrant:latest") is False

    @pytest.mark.asyncio
    async def test_unknown_response_ignored(self):
        broker = PermissionBroker(EventBus(), timeout_s=0.05)
        assert broker.respond("not-a-request", True) is False

    @pytest.mark.asyncio
    async def test_auto_approve(self):
        assert await AutoApprove().request("backend", "kai-backend:latest") is True
