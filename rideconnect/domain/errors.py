"""Ride tracking error taxonomy.

Every error carries a ``user_message`` so the caller can tell whether the
rider should retry, grant location access or sign in again.
"""

from __future__ import annotations


class RideError(Exception):
    """Base class for ride tracking failures."""

    user_message = "Something went wrong with your ride."
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)


class NotAuthenticated(RideError):
    user_message = "You are signed out. Sign in again to track rides."


class LocationUnavailable(RideError):
    user_message = "Location is unavailable. Allow location access and try again outdoors."
    retryable = True


class PersistenceError(RideError):
    user_message = "Could not save your ride. Check your connection and try again."
    retryable = True


class CheckpointWriteError(PersistenceError):
    """Periodic checkpoint failed. Logged, never surfaced."""


class RideAlreadyActive(RideError):
    user_message = "A ride is already being tracked. Finish or cancel it first."


class NoActiveRide(RideError):
    user_message = "No ride in progress."
