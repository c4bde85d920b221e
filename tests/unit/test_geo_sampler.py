"""
GeoSampler Unit Tests
=====================

Subscription lifecycle, sample conversion and one-shot reads over
scripted position sources.
"""

import asyncio

import pytest

from rideconnect.domain.errors import LocationUnavailable
from rideconnect.domain.models import GPSPosition, PositionSample
from rideconnect.infrastructure.gps.gpsd_client import SimulatedGPSClient, parse_tpv
from rideconnect.infrastructure.gps.sampler import GeoSampler, SamplingPolicy


def fix(lat=-23.55, lon=-46.63, speed=10.0, fix_quality=2, hdop=1.0):
    return GPSPosition(
        latitude=lat, longitude=lon, speed=speed, fix_quality=fix_quality, hdop=hdop
    )


class ListSource:
    """Position source replaying a fixed list, optionally failing at the end."""

    def __init__(self, positions, error=None, hold=False):
        self.positions = list(positions)
        self.error = error
        self.hold = hold
        self.stopped = False

    async def stream_positions(self):
        for pos in self.positions:
            yield pos
        if self.error is not None:
            raise self.error
        if self.hold:
            await asyncio.Event().wait()

    async def get_position_once(self, timeout=10.0):
        if self.error is not None:
            raise self.error
        return self.positions[0] if self.positions else None

    async def stop(self):
        self.stopped = True


async def drain(sub):
    await asyncio.wait_for(sub._task, timeout=1.0)


@pytest.mark.asyncio
class TestSubscription:
    """Tests for continuous watches."""

    async def test_delivers_samples_in_order(self):
        source = ListSource([fix(lat=-23.0), fix(lat=-23.1), fix(lat=-23.2)])
        sampler = GeoSampler(lambda: source)
        got, errors = [], []

        sub = sampler.subscribe(got.append, errors.append)
        await drain(sub)

        assert [s.lat for s in got] == [-23.0, -23.1, -23.2]
        assert all(isinstance(s, PositionSample) for s in got)
        assert sub.delivered == 3
        assert source.stopped

    async def test_speed_converted_to_kmh(self):
        source = ListSource([fix(speed=10.0), fix(speed=None), fix(speed=float("nan"))])
        sampler = GeoSampler(lambda: source)
        got = []

        await drain(sampler.subscribe(got.append))

        assert got[0].speed_kmh == pytest.approx(36.0)
        assert got[1].speed_kmh == 0.0
        assert got[2].speed_kmh == 0.0
        assert got[0].accuracy_m == pytest.approx(5.0)

    async def test_positions_without_fix_dropped(self):
        source = ListSource([fix(fix_quality=0), fix(), fix(fix_quality=0)])
        sampler = GeoSampler(lambda: source)
        got = []

        sub = sampler.subscribe(got.append)
        await drain(sub)

        assert len(got) == 1
        assert sub.dropped == 2

    async def test_min_interval_throttles(self):
        source = ListSource([fix(), fix(), fix()])
        sampler = GeoSampler(lambda: source, policy=SamplingPolicy(min_interval_secs=60.0))
        got = []

        sub = sampler.subscribe(got.append)
        await drain(sub)

        assert len(got) == 1
        assert sub.dropped == 2

    async def test_stream_end_reported(self):
        sampler = GeoSampler(lambda: ListSource([fix()]))
        errors = []

        await drain(sampler.subscribe(lambda s: None, errors.append))

        assert len(errors) == 1
        assert isinstance(errors[0], LocationUnavailable)

    async def test_stream_failure_reported(self):
        source = ListSource([fix()], error=ConnectionError("gpsd gone"))
        sampler = GeoSampler(lambda: source)
        got, errors = [], []

        await drain(sampler.subscribe(got.append, errors.append))

        assert len(got) == 1
        assert "gpsd gone" in str(errors[0])
        assert source.stopped

    async def test_callback_error_does_not_stop_stream(self):
        sampler = GeoSampler(lambda: ListSource([fix(), fix()]))
        calls = []

        def explode(sample):
            calls.append(sample)
            raise RuntimeError("boom")

        sub = sampler.subscribe(explode)
        await drain(sub)

        assert len(calls) == 2

    async def test_unsubscribe_stops_source(self):
        source = ListSource([fix()], hold=True)
        sampler = GeoSampler(lambda: source)
        errors = []

        sub = sampler.subscribe(lambda s: None, errors.append)
        await asyncio.sleep(0.01)
        assert sampler.active_subscriptions == 1

        sampler.unsubscribe(sub)
        with pytest.raises(asyncio.CancelledError):
            await sub._task

        assert sampler.active_subscriptions == 0
        assert source.stopped
        assert errors == []

    async def test_unsubscribe_is_idempotent(self):
        sampler = GeoSampler(lambda: ListSource([], hold=True))
        sub = sampler.subscribe(lambda s: None)

        sampler.unsubscribe(sub)
        sampler.unsubscribe(sub)
        sampler.unsubscribe(None)

        assert sampler.active_subscriptions == 0
        await asyncio.gather(sub._task, return_exceptions=True)

    async def test_aclose_stops_everything(self):
        sampler = GeoSampler(lambda: ListSource([], hold=True))
        subs = [sampler.subscribe(lambda s: None) for _ in range(3)]

        await sampler.aclose()

        assert sampler.active_subscriptions == 0
        assert all(sub._task.done() for sub in subs)


@pytest.mark.asyncio
class TestOneShot:
    """Tests for get_current_position."""

    async def test_returns_sample(self):
        sampler = GeoSampler(lambda: ListSource([fix(lat=-22.9, lon=-43.2)]))
        sample = await sampler.get_current_position()
        assert (sample.lat, sample.lng) == (-22.9, -43.2)

    async def test_no_fix_raises(self):
        sampler = GeoSampler(lambda: ListSource([]), timeout=0.1)
        with pytest.raises(LocationUnavailable):
            await sampler.get_current_position()

    async def test_gpsd_unreachable_raises(self):
        sampler = GeoSampler(lambda: ListSource([], error=ConnectionRefusedError("refused")))
        with pytest.raises(LocationUnavailable):
            await sampler.get_current_position()

    async def test_mock_client_one_shot(self):
        sampler = GeoSampler(lambda: SimulatedGPSClient(interval=0.01))
        sample = await sampler.get_current_position()
        assert sample.lat == pytest.approx(-23.5505)
        assert sample.speed_kmh == pytest.approx(43.2)


@pytest.mark.asyncio
class TestSimulatedGPSClient:
    """Tests for the simulated gpsd client."""

    async def test_moves_east(self):
        client = SimulatedGPSClient(interval=0.001)
        positions = []
        async for pos in client.stream_positions():
            positions.append(pos)
            if len(positions) == 3:
                await client.stop()

        assert len(positions) == 3
        assert positions[2].longitude > positions[1].longitude > positions[0].longitude
        assert positions[0].latitude == pytest.approx(positions[2].latitude)


class TestParseTPV:
    """Tests for gpsd TPV parsing."""

    def test_3d_fix(self):
        pos = parse_tpv(
            {"class": "TPV", "mode": 3, "lat": -23.5, "lon": -46.6, "speed": 5.0, "eph": 10.0}
        )
        assert pos.fix_quality == 2
        assert pos.has_fix
        assert pos.hdop == pytest.approx(2.0)

    def test_no_fix_mode(self):
        pos = parse_tpv({"class": "TPV", "mode": 1, "lat": 0.0, "lon": 0.0})
        assert not pos.has_fix

    def test_missing_coordinates(self):
        assert parse_tpv({"class": "TPV", "mode": 3}) is None

    def test_bad_coordinates(self):
        assert parse_tpv({"class": "TPV", "mode": 3, "lat": "x", "lon": 1}) is None
