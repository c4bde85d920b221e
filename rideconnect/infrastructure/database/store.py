"""SessionStore contract the ride session depends on."""

from __future__ import annotations

from typing import Any, Protocol

from ...domain.models import RideRecord


class SessionStore(Protocol):
    """
    Persistence for ride rows.

    Any failure is raised as an exception; the ride session wraps it in
    PersistenceError.
    """

    async def insert(self, row: dict[str, Any]) -> RideRecord:
        """Create a ride row and return it with its assigned id."""
        ...

    async def update_by_id(self, ride_id: str, fields: dict[str, Any]) -> None:
        """Partial update of a ride row."""
        ...

    async def find_active_by_user(self, user_id: str) -> RideRecord | None:
        """Most recent in_progress row for the actor, or None."""
        ...
