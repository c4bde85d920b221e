"""
Event Bus Unit Tests
====================

Tests for EventBus subscription, priority, once-handlers and error
isolation.
"""

import pytest
import pytest_asyncio

from rideconnect.core.events import EventBus, EventType

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def bus():
    bus = EventBus()
    await bus.start()
    yield bus
    await bus.stop()


async def test_handler_receives_event(bus):
    received = []

    @bus.on(EventType.RIDE_STARTED)
    async def handler(event):
        received.append(event)

    await bus.emit(EventType.RIDE_STARTED, data={"ride_id": "r1"}, source="test")
    await bus.join()

    assert len(received) == 1
    assert received[0].data == {"ride_id": "r1"}
    assert received[0].source == "test"


async def test_priority_order(bus):
    order = []

    async def late(event):
        order.append("late")

    async def early(event):
        order.append("early")

    bus.subscribe(EventType.RIDE_COMPLETED, late, priority=200)
    bus.subscribe(EventType.RIDE_COMPLETED, early, priority=10)

    bus.emit_nowait(EventType.RIDE_COMPLETED)
    await bus.join()

    assert order == ["early", "late"]


async def test_once_handler_removed(bus):
    calls = []

    @bus.on(EventType.GPS_ERROR, once=True)
    async def handler(event):
        calls.append(event)

    bus.emit_nowait(EventType.GPS_ERROR)
    bus.emit_nowait(EventType.GPS_ERROR)
    await bus.join()

    assert len(calls) == 1


async def test_failing_handler_is_isolated(bus):
    """One broken listener neither reaches the emitter nor starves the others."""
    calls = []

    async def broken(event):
        raise RuntimeError("listener bug")

    async def healthy(event):
        calls.append(event)

    bus.subscribe(EventType.RIDE_CHECKPOINT, broken, priority=1)
    bus.subscribe(EventType.RIDE_CHECKPOINT, healthy, priority=2)

    bus.emit_nowait(EventType.RIDE_CHECKPOINT)
    await bus.join()

    assert len(calls) == 1
    assert bus.get_stats()["listener_errors"] == 1


async def test_unsubscribe(bus):
    async def handler(event):
        pass

    bus.subscribe(EventType.RIDE_CANCELLED, handler)
    assert bus.unsubscribe(EventType.RIDE_CANCELLED, handler) is True
    assert bus.unsubscribe(EventType.RIDE_CANCELLED, handler) is False


async def test_history_filtered_by_type(bus):
    bus.emit_nowait(EventType.RIDE_STARTED)
    bus.emit_nowait(EventType.GPS_SAMPLE)
    bus.emit_nowait(EventType.GPS_SAMPLE)
    await bus.join()

    assert len(bus.get_history()) == 3
    assert len(bus.get_history(EventType.GPS_SAMPLE)) == 2
    assert bus.get_stats()["events_published"] == 3


async def test_stop_drains_queue():
    bus = EventBus()
    seen = []

    @bus.on(EventType.RIDE_COMPLETED)
    async def handler(event):
        seen.append(event)

    await bus.start()
    bus.emit_nowait(EventType.RIDE_COMPLETED)
    await bus.stop()

    assert len(seen) == 1
    assert not bus.running
