"""
GPS Distance Accumulation
=========================

Great-circle distance between coordinates and running trip totals.
Uses the atan2 form of the Haversine formula, which stays finite for points
centimetres apart.

Usage:
    total = 0.0
    last = None
    for sample in samples:
        if last is not None:
            total = accumulate(total, last, sample)
        last = sample
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Protocol

EARTH_RADIUS_KM = 6371.0


class HasCoordinates(Protocol):
    lat: float
    lng: float


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate great-circle distance between two points.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in kilometers
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    # Rounding can push a a hair outside [0, 1] for antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def accumulate(previous_total_km: float, last_point: HasCoordinates, new_point: HasCoordinates) -> float:
    """Return ``previous_total_km`` plus the hop from ``last_point`` to ``new_point``."""
    return previous_total_km + haversine(last_point.lat, last_point.lng, new_point.lat, new_point.lng)


def route_distance(points: list[HasCoordinates]) -> float:
    """Total distance in km along an ordered list of points."""
    total = 0.0
    for prev, cur in zip(points, points[1:]):
        total = accumulate(total, prev, cur)
    return total


@dataclass
class NoiseFilter:
    """
    Optional GPS plausibility filter.

    Rejects inaccurate fixes, drift below a minimum movement and hops that
    imply an impossible speed. Disabled sessions never construct one.
    """

    max_accuracy_m: float = 50.0
    min_movement_km: float = 0.005
    max_speed_kmh: float = 300.0
    max_bad_readings: int = 10
    consecutive_rejections: int = 0
    rejected_total: int = 0
    _reasons: dict[str, int] = field(default_factory=dict)

    def check(self, last_point, sample, hop_km: float) -> str | None:
        """
        Validate a sample against the last accepted point.

        Returns:
            None if accepted, otherwise the rejection reason
        """
        reason = None
        accuracy = getattr(sample, "accuracy_m", None)
        if accuracy is not None and accuracy > self.max_accuracy_m:
            reason = "accuracy"
        elif hop_km < self.min_movement_km:
            reason = "drift"
        else:
            elapsed_h = (sample.timestamp - last_point.timestamp).total_seconds() / 3600
            if elapsed_h > 0 and hop_km / elapsed_h > self.max_speed_kmh:
                reason = "speed"

        if reason is None:
            self.consecutive_rejections = 0
            return None

        self.consecutive_rejections += 1
        self.rejected_total += 1
        self._reasons[reason] = self._reasons.get(reason, 0) + 1
        return reason

    @property
    def degraded(self) -> bool:
        """Too many consecutive rejections - signal is poor."""
        return self.consecutive_rejections >= self.max_bad_readings

    def reset_degraded(self) -> None:
        self.consecutive_rejections = 0

    def to_dict(self) -> dict:
        """Export filter counters as dictionary."""
        return {
            "rejected_total": self.rejected_total,
            "consecutive_rejections": self.consecutive_rejections,
            "reasons": dict(self._reasons),
        }
