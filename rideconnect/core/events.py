"""
Ride Event Bus
==============

Ride lifecycle and GPS notifications travel from RideSession to whoever
shows them to the rider. Publishing only enqueues; one dispatcher task
delivers to listeners, so the sample callback never waits on a listener.

Usage:
    bus = EventBus()
    await bus.start()

    @bus.on(EventType.RIDE_COMPLETED)
    async def announce(event: Event):
        print(f"Ride saved: {event.data['distance_km']:.1f} km")

    bus.emit_nowait(EventType.RIDE_COMPLETED, data={...}, source="ride_session")
    await bus.stop()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RIDE_STARTED = "ride.started"
    RIDE_RESUMED = "ride.resumed"
    RIDE_CHECKPOINT = "ride.checkpoint"
    RIDE_CHECKPOINT_FAILED = "ride.checkpoint_failed"
    RIDE_PHOTO_ADDED = "ride.photo_added"
    RIDE_COMPLETED = "ride.completed"
    RIDE_CANCELLED = "ride.cancelled"

    GPS_SAMPLE = "gps.sample"
    GPS_ERROR = "gps.error"
    GPS_DEGRADED = "gps.degraded"


@dataclass(frozen=True)
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    source: str = "system"
    at: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    @property
    def ride_id(self) -> str | None:
        return self.data.get("ride_id")


Listener = Callable[[Event], Awaitable[None]]


@dataclass(order=True)
class _Registration:
    priority: int
    seq: int
    listener: Listener = field(compare=False)
    once: bool = field(default=False, compare=False)


class EventBus:
    """
    Queue-backed pub/sub.

    Listeners run in priority order (lower first, then registration order).
    A listener that raises is logged and counted; the remaining listeners
    still run and the publisher never sees the error.
    """

    def __init__(self, history_size: int = 500) -> None:
        self._registry: defaultdict[EventType, list[_Registration]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._history: deque[Event] = deque(maxlen=history_size)
        self._dispatcher: asyncio.Task | None = None
        self._seq = 0
        self._counts: Counter[str] = Counter()

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def subscribe(
        self,
        event_type: EventType,
        listener: Listener,
        priority: int = 100,
        once: bool = False,
    ) -> None:
        self._seq += 1
        regs = self._registry[event_type]
        regs.append(_Registration(priority, self._seq, listener, once))
        regs.sort()
        logger.debug("Listener %s registered for %s", getattr(listener, "__name__", listener), event_type.value)

    def unsubscribe(self, event_type: EventType, listener: Listener) -> bool:
        """Returns True if the listener was registered."""
        regs = self._registry.get(event_type, [])
        for reg in regs:
            if reg.listener == listener:
                regs.remove(reg)
                return True
        return False

    def on(
        self, event_type: EventType, priority: int = 100, once: bool = False
    ) -> Callable[[Listener], Listener]:
        """Decorator form of subscribe()."""
        def register(listener: Listener) -> Listener:
            self.subscribe(event_type, listener, priority, once)
            return listener
        return register

    def emit_nowait(
        self,
        event_type: EventType,
        data: dict[str, Any] | None = None,
        source: str = "system",
    ) -> Event:
        """Enqueue an event. Safe to call from synchronous callbacks on the loop."""
        event = Event(type=event_type, data=dict(data or {}), source=source)
        self._queue.put_nowait(event)
        self._counts["published"] += 1
        return event

    async def emit(
        self,
        event_type: EventType,
        data: dict[str, Any] | None = None,
        source: str = "system",
    ) -> Event:
        return self.emit_nowait(event_type, data, source)

    async def start(self) -> None:
        if self.running:
            return
        self._dispatcher = asyncio.create_task(self._run())
        logger.info("Event bus started")

    async def join(self) -> None:
        """Wait until everything enqueued so far has been delivered."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued (up to ``timeout``), then stop the dispatcher."""
        if self._dispatcher is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except TimeoutError:
            logger.warning("Event bus stopped with %d undelivered events", self._queue.qsize())

        self._dispatcher.cancel()
        try:
            await self._dispatcher
        except asyncio.CancelledError:
            pass
        self._dispatcher = None
        logger.info("Event bus stopped")

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: Event) -> None:
        self._history.append(event)
        regs = self._registry.get(event.type)
        if not regs:
            return

        for reg in list(regs):
            if reg.once:
                regs.remove(reg)
            try:
                await reg.listener(event)
            except Exception as e:
                self._counts["listener_errors"] += 1
                logger.error(
                    "Listener %s failed on %s: %s",
                    getattr(reg.listener, "__name__", reg.listener),
                    event.type.value,
                    e,
                )
            else:
                self._counts["delivered"] += 1

    def get_history(self, event_type: EventType | None = None, limit: int = 100) -> list[Event]:
        """Delivered events, oldest first, optionally of one type."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> dict[str, int]:
        return {
            "events_published": self._counts["published"],
            "events_delivered": self._counts["delivered"],
            "listener_errors": self._counts["listener_errors"],
            "queue_size": self._queue.qsize(),
            "listener_count": sum(len(regs) for regs in self._registry.values()),
        }
