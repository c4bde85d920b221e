"""
Distance Tracker Unit Tests
===========================

Tests for great-circle distance, running totals and the noise filter.
"""

from datetime import UTC, datetime, timedelta

import pytest

from rideconnect.domain.models import PositionSample, RoutePoint
from rideconnect.infrastructure.gps.distance import (
    NoiseFilter,
    accumulate,
    haversine,
    route_distance,
)

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


def point(lat, lng, seconds=0.0, speed_kmh=0.0):
    return RoutePoint(lat=lat, lng=lng, timestamp=T0 + timedelta(seconds=seconds), speed_kmh=speed_kmh)


def sample(lat, lng, seconds=0.0, accuracy_m=None):
    return PositionSample(lat=lat, lng=lng, timestamp=T0 + timedelta(seconds=seconds), accuracy_m=accuracy_m)


class TestHaversine:
    """Tests for haversine()."""

    def test_same_point_is_zero(self):
        assert haversine(-23.5505, -46.6333, -23.5505, -46.6333) == 0.0

    def test_sao_paulo_to_rio(self):
        """Known city pair, ~360 km."""
        d = haversine(-23.5505, -46.6333, -22.9068, -43.1729)
        assert 357 < d < 361

    def test_one_degree_on_equator(self):
        assert haversine(0, 0, 0, 1) == pytest.approx(111.195, abs=0.01)

    def test_symmetric(self):
        a = haversine(-23.5505, -46.6333, -22.9068, -43.1729)
        b = haversine(-22.9068, -43.1729, -23.5505, -46.6333)
        assert a == pytest.approx(b)

    def test_centimetre_hops_stay_finite(self):
        d = haversine(-23.5505, -46.6333, -23.5505001, -46.6333)
        assert d >= 0.0
        assert d < 0.0001

    def test_antipodal_points(self):
        d = haversine(0, 0, 0, 180)
        assert d == pytest.approx(3.141592653589793 * 6371.0, rel=1e-9)


class TestAccumulate:
    """Tests for running totals."""

    def test_adds_hop(self):
        total = accumulate(1.5, point(0, 0), point(0, 1))
        assert total == pytest.approx(1.5 + 111.195, abs=0.01)

    def test_never_decreases(self):
        total = 0.0
        pts = [point(-23.55, -46.63), point(-23.55, -46.63), point(-23.56, -46.62), point(-23.55, -46.63)]
        for prev, cur in zip(pts, pts[1:]):
            new_total = accumulate(total, prev, cur)
            assert new_total >= total
            total = new_total

    def test_route_distance(self):
        pts = [point(-23.5505, -46.6333 + 0.01 * i) for i in range(4)]
        step = haversine(-23.5505, -46.6333, -23.5505, -46.6233)
        assert route_distance(pts) == pytest.approx(3 * step)
        assert step == pytest.approx(1.019, abs=0.001)

    def test_route_distance_short_routes(self):
        assert route_distance([]) == 0.0
        assert route_distance([point(1, 1)]) == 0.0


class TestNoiseFilter:
    """Tests for NoiseFilter.check()."""

    def test_accepts_plausible_hop(self):
        f = NoiseFilter()
        last, s = point(0, 0), sample(0.001, 0, seconds=10)
        assert f.check(last, s, haversine(0, 0, 0.001, 0)) is None

    def test_rejects_inaccurate_fix(self):
        f = NoiseFilter(max_accuracy_m=50)
        assert f.check(point(0, 0), sample(0.001, 0, 10, accuracy_m=80.0), 0.111) == "accuracy"

    def test_rejects_drift(self):
        f = NoiseFilter(min_movement_km=0.005)
        assert f.check(point(0, 0), sample(0, 0, 10), 0.001) == "drift"

    def test_rejects_impossible_speed(self):
        f = NoiseFilter(max_speed_kmh=300)
        # 10 km in 10 seconds = 3600 km/h
        assert f.check(point(0, 0), sample(0.09, 0, 10), 10.0) == "speed"

    def test_degraded_after_consecutive_rejections(self):
        f = NoiseFilter(max_bad_readings=3)
        for _ in range(2):
            f.check(point(0, 0), sample(0, 0, 10), 0.0)
        assert not f.degraded
        f.check(point(0, 0), sample(0, 0, 10), 0.0)
        assert f.degraded

        f.reset_degraded()
        assert not f.degraded
        assert f.to_dict()["rejected_total"] == 3
        assert f.to_dict()["reasons"] == {"drift": 3}

    def test_accepted_sample_resets_streak(self):
        f = NoiseFilter(max_bad_readings=3)
        f.check(point(0, 0), sample(0, 0, 10), 0.0)
        f.check(point(0, 0), sample(0.001, 0, 10), 0.111)
        assert f.consecutive_rejections == 0
