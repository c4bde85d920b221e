"""Shared fakes: controllable clock, scripted sampler and recording store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from rideconnect.core.identity import StaticIdentity
from rideconnect.core.session import RideSession
from rideconnect.domain.errors import LocationUnavailable
from rideconnect.domain.models import PositionSample, RideRecord, RideStatus
from rideconnect.infrastructure.gps.sampler import Subscription

SAO_PAULO = (-23.5505, -46.6333)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSampler:
    """GeoSampler stand-in; tests push samples by hand."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.position: tuple[float, float] = SAO_PAULO
        self.deny = False
        self.one_shot_calls = 0
        self.subscriptions: list[Subscription] = []

    @property
    def active_subscriptions(self) -> int:
        return sum(1 for sub in self.subscriptions if sub.active)

    def subscribe(self, on_sample, on_error=None) -> Subscription:
        sub = Subscription(on_sample=on_sample, on_error=on_error)
        self.subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription | None) -> None:
        if sub is None or not sub.active:
            return
        sub.active = False

    async def get_current_position(self) -> PositionSample:
        self.one_shot_calls += 1
        if self.deny:
            raise LocationUnavailable("permission denied")
        lat, lng = self.position
        return PositionSample(lat=lat, lng=lng, timestamp=self.clock())

    def sample(self, lat: float, lng: float, speed_kmh: float = 0.0, accuracy_m: float | None = None) -> PositionSample:
        return PositionSample(lat=lat, lng=lng, speed_kmh=speed_kmh, accuracy_m=accuracy_m, timestamp=self.clock())

    def emit(self, lat: float, lng: float, speed_kmh: float = 0.0, accuracy_m: float | None = None) -> None:
        """Deliver one sample to every active subscription."""
        sample = self.sample(lat, lng, speed_kmh, accuracy_m)
        for sub in self.subscriptions:
            if sub.active:
                sub.on_sample(sample)

    def fail(self, error: LocationUnavailable) -> None:
        for sub in self.subscriptions:
            if sub.active and sub.on_error is not None:
                sub.on_error(error)


class RecordingStore:
    """In-memory SessionStore recording every call."""

    def __init__(self) -> None:
        self.rows: dict[str, RideRecord] = {}
        self.inserts: list[dict] = []
        self.updates: list[tuple[str, dict]] = []
        self.fail_inserts = False
        self.fail_updates = False
        self.fail_reads = False

    async def insert(self, row: dict) -> RideRecord:
        self.inserts.append(dict(row))
        if self.fail_inserts:
            raise ConnectionError("store offline")
        ride_id = f"ride-{len(self.rows) + 1}"
        record = RideRecord(
            id=ride_id,
            user_id=row["user_id"],
            status=row.get("status", RideStatus.IN_PROGRESS),
            start_time=row["start_time"],
            start_location=row.get("start_location"),
            route_points=list(row.get("route_points", [])),
            distance_km=row.get("distance_km", 0.0),
        )
        self.rows[ride_id] = record
        return record

    async def update_by_id(self, ride_id: str, fields: dict) -> None:
        self.updates.append((ride_id, dict(fields)))
        if self.fail_updates:
            raise ConnectionError("store offline")
        self.rows[ride_id] = self.rows[ride_id].model_copy(update=fields)

    async def find_active_by_user(self, user_id: str) -> RideRecord | None:
        if self.fail_reads:
            raise ConnectionError("store offline")
        active = [r for r in self.rows.values() if r.user_id == user_id and r.is_active]
        return active[-1] if active else None

    def add(self, record: RideRecord) -> RideRecord:
        self.rows[record.id] = record
        return record

    @property
    def checkpoints(self) -> list[dict]:
        return [fields for _, fields in self.updates if set(fields) == {"distance_km", "route_points", "duration_minutes"}]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sampler(clock) -> FakeSampler:
    return FakeSampler(clock)


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def actor() -> StaticIdentity:
    return StaticIdentity("rider-1")


@pytest_asyncio.fixture
async def session(store, sampler, actor, clock):
    ride = RideSession(store, sampler, actor, checkpoint_every=10, clock=clock)
    yield ride
    await ride.close()
