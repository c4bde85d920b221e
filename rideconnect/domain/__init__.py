"""RideConnect Domain Layer - Core ride models and error taxonomy."""

from .errors import (
    CheckpointWriteError,
    LocationUnavailable,
    NoActiveRide,
    NotAuthenticated,
    PersistenceError,
    RideAlreadyActive,
    RideError,
)
from .models import (
    GPSPosition,
    PositionSample,
    RideRecord,
    RideStatus,
    RoutePoint,
    SessionStatus,
)

__all__ = [
    "CheckpointWriteError",
    "GPSPosition",
    "LocationUnavailable",
    "NoActiveRide",
    "NotAuthenticated",
    "PersistenceError",
    "PositionSample",
    "RideAlreadyActive",
    "RideError",
    "RideRecord",
    "RideStatus",
    "RoutePoint",
    "SessionStatus",
]
