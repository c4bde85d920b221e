"""RideConnect Domain Models - Pydantic models for core entities."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class RideStatus(str, Enum):
    """Persisted ride row status."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SessionStatus(str, Enum):
    """In-memory ride session state."""

    IDLE = "idle"
    TRACKING = "tracking"
    COMPLETING = "completing"  # transient, while the final write is in flight
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class GPSPosition(BaseModel):
    """GPS coordinate data from gpsd."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    altitude: float | None = None  # metres above sea level
    speed: float | None = None  # m/s
    heading: float | None = None  # degrees from true north
    hdop: float | None = None  # horizontal dilution of precision
    satellites: int = 0
    fix_quality: int = 0  # 0=no fix, 1=2D, 2=3D
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_fix(self) -> bool:
        """Check if gpsd reported a 2D or 3D fix."""
        return self.fix_quality > 0

    @property
    def accuracy_meters(self) -> float | None:
        """Estimated horizontal accuracy in meters."""
        if self.hdop is None:
            return None
        return self.hdop * 5.0  # Rough estimate


class PositionSample(BaseModel):
    """One position delivered by the GeoSampler."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    speed_kmh: float = Field(0.0, ge=0)
    accuracy_m: float | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_position(cls, position: GPSPosition, now: datetime | None = None) -> PositionSample:
        """Convert a gpsd position; speed m/s -> km/h, missing speed -> 0."""
        speed = position.speed
        speed_kmh = speed * 3.6 if speed is not None and not math.isnan(speed) and speed > 0 else 0.0
        return cls(
            lat=position.latitude,
            lng=position.longitude,
            speed_kmh=speed_kmh,
            accuracy_m=position.accuracy_meters,
            timestamp=now or datetime.now(UTC),
        )

    def to_route_point(self) -> RoutePoint:
        return RoutePoint(
            lat=self.lat,
            lng=self.lng,
            timestamp=self.timestamp,
            speed_kmh=self.speed_kmh,
            accuracy_m=self.accuracy_m,
        )

    @property
    def location_label(self) -> str:
        """Location stamp stored on the ride row ("lat, lng")."""
        return f"{self.lat}, {self.lng}"


class RoutePoint(BaseModel):
    """Route point appended while tracking."""

    lat: float
    lng: float
    timestamp: datetime
    speed_kmh: float = 0.0
    accuracy_m: float | None = None


class RideRecord(BaseModel):
    """Persisted ride row."""

    id: str
    user_id: str
    status: RideStatus = RideStatus.IN_PROGRESS
    start_time: datetime
    end_time: datetime | None = None
    start_location: str | None = None
    end_location: str | None = None
    route_points: list[RoutePoint] = Field(default_factory=list)
    distance_km: float = 0.0
    duration_minutes: int | None = None
    photos: list[str] = Field(default_factory=list)
    description: str | None = None
    tagged_users: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status == RideStatus.IN_PROGRESS
