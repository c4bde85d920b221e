"""
Ride Session
============

Owns one ride's lifecycle: start -> tracking -> completed / cancelled.

While tracking, every position sample is appended to the route, distance
grows by the haversine hop from the previous point, and every Nth point a
best-effort checkpoint is written to the SessionStore without blocking the
sample path. Terminal transitions stop the GPS watch and the elapsed-time
ticker before their final write, then reset the session to a fresh idle
state.

Usage:
    session = RideSession(store, sampler, actor=EnvIdentity())
    await session.start()
    ...
    summary = await session.complete(description="Serra do Mar")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from ..domain.errors import (
    CheckpointWriteError,
    NoActiveRide,
    NotAuthenticated,
    PersistenceError,
    RideAlreadyActive,
)
from ..domain.models import (
    PositionSample,
    RideRecord,
    RideStatus,
    RoutePoint,
    SessionStatus,
)
from ..infrastructure.gps.distance import NoiseFilter, accumulate, haversine
from ..infrastructure.gps.sampler import (
    GeoSampler,
    SamplingPolicy,
    Subscription,
    source_factory_from_config,
)
from .events import EventBus, EventType
from .identity import ActorProvider

if TYPE_CHECKING:
    from ..config import RideConnectConfig
    from ..infrastructure.database.store import SessionStore

logger = logging.getLogger(__name__)

SOURCE = "ride_session"


@dataclass
class RideState:
    """Mutable state of one ride. Replaced wholesale on every reset."""

    status: SessionStatus = SessionStatus.IDLE
    ride_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    end_location: str | None = None
    distance_km: float = 0.0
    elapsed_seconds: int = 0
    speed_kmh: float = 0.0
    max_speed_kmh: float = 0.0
    route_points: list[RoutePoint] = field(default_factory=list)
    photos: list[str] = field(default_factory=list)
    last_position: RoutePoint | None = None
    appended: int = 0  # samples appended by this process


@dataclass(frozen=True)
class RideSummary:
    """Final figures of a completed ride."""

    ride_id: str
    distance_km: float
    duration_minutes: int
    elapsed_seconds: int
    points: int
    photos: int
    average_speed_kmh: float
    max_speed_kmh: float


def _average_speed(points: list[RoutePoint]) -> float:
    speeds = [p.speed_kmh for p in points if p.speed_kmh > 0]
    return sum(speeds) / len(speeds) if speeds else 0.0


class RideSession:
    """
    In-memory ride state machine.

    The session exclusively owns its sampler subscription and ticker task.
    Callers read the derived properties and invoke start / add_photo /
    complete / cancel.
    """

    def __init__(
        self,
        store: SessionStore,
        sampler: GeoSampler,
        actor: ActorProvider,
        *,
        bus: EventBus | None = None,
        checkpoint_every: int = 10,
        tick_interval: float = 1.0,
        noise_filter: NoiseFilter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if checkpoint_every < 1:
            raise ValueError("checkpoint_every must be >= 1")
        self._store = store
        self._sampler = sampler
        self._actor = actor
        self._bus = bus
        self._checkpoint_every = checkpoint_every
        self._tick_interval = tick_interval
        self._filter = noise_filter
        self._clock = clock or (lambda: datetime.now(UTC))

        self._state = RideState()
        self._subscription: Subscription | None = None
        self._ticker: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._starting = False

        self.checkpoints_written = 0
        self.checkpoint_failures = 0
        self.last_checkpoint_error: CheckpointWriteError | None = None

    @classmethod
    def from_config(
        cls,
        cfg: RideConnectConfig,
        store: SessionStore,
        actor: ActorProvider,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> RideSession:
        sampler = GeoSampler(
            source_factory_from_config(cfg.gps),
            policy=SamplingPolicy.from_config(cfg.sampling),
            timeout=cfg.gps.timeout,
            clock=clock,
        )
        noise = cfg.tracking.filter
        noise_filter = None
        if noise.enabled:
            noise_filter = NoiseFilter(
                max_accuracy_m=noise.max_accuracy_m,
                min_movement_km=noise.min_movement_km,
                max_speed_kmh=noise.max_speed_kmh,
                max_bad_readings=noise.max_bad_readings,
            )
        return cls(
            store,
            sampler,
            actor,
            bus=bus,
            checkpoint_every=cfg.tracking.checkpoint_every,
            tick_interval=cfg.tracking.tick_interval_secs,
            noise_filter=noise_filter,
            clock=clock,
        )

    # =========================================================================
    # Derived read-only state
    # =========================================================================

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def ride_id(self) -> str | None:
        return self._state.ride_id

    @property
    def is_tracking(self) -> bool:
        return self._state.status == SessionStatus.TRACKING

    @property
    def is_sampling(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def start_time(self) -> datetime | None:
        return self._state.start_time

    @property
    def end_time(self) -> datetime | None:
        return self._state.end_time

    @property
    def distance_km(self) -> float:
        return self._state.distance_km

    @property
    def elapsed_seconds(self) -> int:
        """Wall-clock seconds since start while tracking, frozen afterwards."""
        if self._state.status == SessionStatus.TRACKING and self.is_sampling:
            return self._elapsed(self._state)
        return self._state.elapsed_seconds

    @property
    def speed_kmh(self) -> float:
        return self._state.speed_kmh

    @property
    def average_speed_kmh(self) -> float:
        return _average_speed(self._state.route_points)

    @property
    def max_speed_kmh(self) -> float:
        return self._state.max_speed_kmh

    @property
    def route_points(self) -> list[RoutePoint]:
        return list(self._state.route_points)

    @property
    def photos(self) -> list[str]:
        return list(self._state.photos)

    def to_dict(self) -> dict:
        """Export session state as dictionary."""
        return {
            "status": self.status.value,
            "ride_id": self.ride_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "distance_km": round(self.distance_km, 3),
            "elapsed_seconds": self.elapsed_seconds,
            "speed_kmh": round(self.speed_kmh, 1),
            "average_speed_kmh": round(self.average_speed_kmh, 1),
            "max_speed_kmh": round(self.max_speed_kmh, 1),
            "points": len(self._state.route_points),
            "photos": len(self._state.photos),
            "checkpoints_written": self.checkpoints_written,
            "checkpoint_failures": self.checkpoint_failures,
        }

    # =========================================================================
    # Operations
    # =========================================================================

    async def start(self) -> RideRecord:
        """
        Start tracking a new ride.

        Raises:
            RideAlreadyActive: a ride is already tracked or starting
            NotAuthenticated: no actor identity
            LocationUnavailable: initial position could not be read
            PersistenceError: the ride row could not be created
        """
        if self._starting or self._state.status != SessionStatus.IDLE:
            raise RideAlreadyActive()
        user_id = self._require_actor()

        self._starting = True
        try:
            position = await self._sampler.get_current_position()
            start_time = self._clock()
            seed = position.to_route_point()
            try:
                record = await self._store.insert({
                    "user_id": user_id,
                    "status": RideStatus.IN_PROGRESS,
                    "start_time": start_time,
                    "start_location": position.location_label,
                    "route_points": [seed],
                    "distance_km": 0.0,
                })
            except Exception as e:
                logger.error("Failed to create ride for %s: %s", user_id, e)
                raise PersistenceError(f"Could not create ride: {e}") from e
        finally:
            self._starting = False

        state = RideState(
            status=SessionStatus.TRACKING,
            ride_id=record.id,
            start_time=start_time,
            speed_kmh=seed.speed_kmh,
            max_speed_kmh=seed.speed_kmh,
            route_points=[seed],
            last_position=seed,
        )
        self._state = state
        self._begin_sampling(state)

        logger.info("Ride %s started at %s", record.id, position.location_label)
        self._emit(EventType.RIDE_STARTED, {
            "ride_id": record.id,
            "start_location": position.location_label,
        })
        return record

    def resume(self, record: RideRecord) -> bool:
        """
        Rehydrate from a persisted in_progress row and resume sampling.

        Elapsed time is re-derived from the row's start_time, so time spent
        while the app was closed counts as ride time.

        Returns:
            True if resumed, False if this ride is already being tracked
        """
        current = self._state
        if current.ride_id == record.id and current.status == SessionStatus.TRACKING:
            logger.debug("Ride %s already tracked, not resuming twice", record.id)
            return False
        if self._starting or current.status != SessionStatus.IDLE:
            raise RideAlreadyActive()

        start_time = record.start_time
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=UTC)

        points = list(record.route_points)
        state = RideState(
            status=SessionStatus.TRACKING,
            ride_id=record.id,
            start_time=start_time,
            distance_km=record.distance_km,
            max_speed_kmh=max((p.speed_kmh for p in points), default=0.0),
            route_points=points,
            photos=list(record.photos),
            last_position=points[-1] if points else None,
        )
        state.elapsed_seconds = self._elapsed(state)
        self._state = state
        self._begin_sampling(state)

        logger.info(
            "Ride %s resumed: %.2f km, %d points, %ds elapsed",
            record.id,
            state.distance_km,
            len(points),
            state.elapsed_seconds,
        )
        self._emit(EventType.RIDE_RESUMED, {
            "ride_id": record.id,
            "distance_km": state.distance_km,
            "elapsed_seconds": state.elapsed_seconds,
        })
        return True

    async def add_photo(self, url: str) -> None:
        """
        Attach a media URL to the ride and write it through.

        The photo stays attached locally even if the write fails.
        """
        state = self._state
        if state.status not in (SessionStatus.TRACKING, SessionStatus.COMPLETING):
            raise NoActiveRide()

        state.photos.append(url)
        try:
            await self._store.update_by_id(state.ride_id, {"photos": list(state.photos)})
        except Exception as e:
            logger.error("Failed to save photo for ride %s: %s", state.ride_id, e)
            raise PersistenceError(f"Could not save photo: {e}") from e

        self._emit(EventType.RIDE_PHOTO_ADDED, {"ride_id": state.ride_id, "url": url})

    async def complete(
        self,
        description: str | None = None,
        tagged_users: list[str] | None = None,
    ) -> RideSummary:
        """
        Finish the ride and persist its final figures.

        A failed final write leaves the session in ``completing`` with the
        sampler stopped; calling complete() again retries the write.
        """
        state = self._state
        if state.status not in (SessionStatus.TRACKING, SessionStatus.COMPLETING):
            raise NoActiveRide()
        self._require_actor()

        if state.status == SessionStatus.TRACKING:
            end = await self._sampler.get_current_position()
            if state is not self._state or state.status != SessionStatus.TRACKING:
                raise NoActiveRide()

            self._stop_sampling()
            state.end_time = self._clock()
            state.end_location = end.location_label
            state.elapsed_seconds = self._elapsed(state, at=state.end_time)
            state.status = SessionStatus.COMPLETING

        duration_minutes = state.elapsed_seconds // 60
        try:
            await self._store.update_by_id(state.ride_id, {
                "status": RideStatus.COMPLETED,
                "end_time": state.end_time,
                "end_location": state.end_location,
                "distance_km": state.distance_km,
                "duration_minutes": duration_minutes,
                "description": description or None,
                "tagged_users": list(tagged_users or []),
                "route_points": list(state.route_points),
                "photos": list(state.photos),
            })
        except Exception as e:
            logger.error("Failed to complete ride %s: %s", state.ride_id, e)
            raise PersistenceError(f"Could not complete ride: {e}") from e

        state.status = SessionStatus.COMPLETED
        summary = RideSummary(
            ride_id=state.ride_id,
            distance_km=state.distance_km,
            duration_minutes=duration_minutes,
            elapsed_seconds=state.elapsed_seconds,
            points=len(state.route_points),
            photos=len(state.photos),
            average_speed_kmh=_average_speed(state.route_points),
            max_speed_kmh=state.max_speed_kmh,
        )
        self._state = RideState()

        logger.info(
            "Ride %s completed: %.2f km in %d min",
            summary.ride_id,
            summary.distance_km,
            summary.duration_minutes,
        )
        self._emit(EventType.RIDE_COMPLETED, {
            "ride_id": summary.ride_id,
            "distance_km": summary.distance_km,
            "duration_minutes": summary.duration_minutes,
        })
        return summary

    async def cancel(self) -> None:
        """
        Abandon the ride. Only the status is written; the row keeps its
        last checkpointed distance and route.
        """
        state = self._state
        if state.status not in (SessionStatus.TRACKING, SessionStatus.COMPLETING):
            raise NoActiveRide()

        if self.is_sampling:
            state.elapsed_seconds = self._elapsed(state)
        self._stop_sampling()

        try:
            await self._store.update_by_id(state.ride_id, {"status": RideStatus.CANCELLED})
        except Exception as e:
            logger.error("Failed to cancel ride %s: %s", state.ride_id, e)
            raise PersistenceError(f"Could not cancel ride: {e}") from e

        state.status = SessionStatus.CANCELLED
        self._state = RideState()

        logger.info("Ride %s cancelled", state.ride_id)
        self._emit(EventType.RIDE_CANCELLED, {"ride_id": state.ride_id})

    async def close(self) -> None:
        """Teardown: stop GPS watch and ticker, wait for in-flight checkpoints."""
        self._stop_sampling()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def wait_for_checkpoints(self) -> None:
        """Wait for in-flight checkpoint writes without stopping anything."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # =========================================================================
    # Sampling
    # =========================================================================

    def _begin_sampling(self, state: RideState) -> None:
        # Exactly one watch per session
        self._stop_sampling()
        self._subscription = self._sampler.subscribe(
            lambda sample: self._handle_sample(state, sample),
            lambda error: self._handle_sampler_error(state, error),
        )
        self._ticker = asyncio.get_running_loop().create_task(self._tick(state))

    def _stop_sampling(self) -> None:
        if self._subscription is not None:
            self._sampler.unsubscribe(self._subscription)
            self._subscription = None
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _tick(self, state: RideState) -> None:
        while state is self._state and state.status == SessionStatus.TRACKING:
            await asyncio.sleep(self._tick_interval)
            state.elapsed_seconds = self._elapsed(state)

    def _handle_sample(self, state: RideState, sample: PositionSample) -> None:
        if state is not self._state or state.status != SessionStatus.TRACKING:
            logger.debug("Sample ignored: ride no longer tracking")
            return

        last = state.last_position
        if last is not None and self._filter is not None:
            hop_km = haversine(last.lat, last.lng, sample.lat, sample.lng)
            reason = self._filter.check(last, sample, hop_km)
            if reason is not None:
                logger.debug("Sample rejected (%s): %.4f km hop", reason, hop_km)
                if self._filter.degraded:
                    logger.warning("GPS signal degraded: %d bad readings in a row", self._filter.consecutive_rejections)
                    self._emit(EventType.GPS_DEGRADED, {"ride_id": state.ride_id, **self._filter.to_dict()})
                    self._filter.reset_degraded()
                return

        point = sample.to_route_point()
        if last is not None:
            state.distance_km = accumulate(state.distance_km, last, point)
        state.route_points.append(point)
        state.last_position = point
        state.speed_kmh = point.speed_kmh
        state.max_speed_kmh = max(state.max_speed_kmh, point.speed_kmh)
        state.elapsed_seconds = self._elapsed(state)
        state.appended += 1

        self._emit(EventType.GPS_SAMPLE, {
            "ride_id": state.ride_id,
            "lat": point.lat,
            "lng": point.lng,
            "speed_kmh": point.speed_kmh,
            "distance_km": state.distance_km,
        })

        if state.appended % self._checkpoint_every == 0:
            self._schedule_checkpoint(state)

    def _handle_sampler_error(self, state: RideState, error: Exception) -> None:
        if state is not self._state:
            return
        logger.warning("GPS error during ride %s: %s", state.ride_id, error)
        self._emit(EventType.GPS_ERROR, {"ride_id": state.ride_id, "error": str(error)})

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def _schedule_checkpoint(self, state: RideState) -> None:
        fields = {
            "distance_km": state.distance_km,
            "route_points": list(state.route_points),
            "duration_minutes": state.elapsed_seconds // 60,
        }
        task = asyncio.get_running_loop().create_task(
            self._write_checkpoint(state.ride_id, fields)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_checkpoint(self, ride_id: str, fields: dict[str, Any]) -> None:
        try:
            await self._store.update_by_id(ride_id, fields)
        except Exception as e:
            # Best effort: a lost checkpoint only costs the newest points on recovery
            error = CheckpointWriteError(f"Checkpoint write failed for ride {ride_id}: {e}")
            error.__cause__ = e
            self.checkpoint_failures += 1
            self.last_checkpoint_error = error
            logger.error("%s", error)
            self._emit(EventType.RIDE_CHECKPOINT_FAILED, {"ride_id": ride_id, "error": str(e)})
            return

        self.checkpoints_written += 1
        logger.debug(
            "Checkpoint saved for ride %s: %.3f km, %d points",
            ride_id,
            fields["distance_km"],
            len(fields["route_points"]),
        )
        self._emit(EventType.RIDE_CHECKPOINT, {
            "ride_id": ride_id,
            "distance_km": fields["distance_km"],
            "points": len(fields["route_points"]),
        })

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_actor(self) -> str:
        user_id = self._actor()
        if not user_id:
            raise NotAuthenticated()
        return user_id

    def _elapsed(self, state: RideState, at: datetime | None = None) -> int:
        if state.start_time is None:
            return 0
        now = at or self._clock()
        return max(0, int((now - state.start_time).total_seconds()))

    def _emit(self, event_type: EventType, data: dict) -> None:
        if self._bus is not None:
            self._bus.emit_nowait(event_type, data=data, source=SOURCE)
