"""Database infrastructure - SQLite for ride data."""

from .async_repository import AsyncRideRepository
from .schema import RIDES_SCHEMA
from .store import SessionStore

__all__ = [
    "RIDES_SCHEMA",
    "AsyncRideRepository",
    "SessionStore",
]
