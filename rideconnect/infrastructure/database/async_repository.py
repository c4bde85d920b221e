"""
Async Ride Repository
=====================

Fully async SessionStore implementation using aiosqlite.

Usage:
    repo = AsyncRideRepository("logs/rides.db")
    await repo.init_schema()

    ride = await repo.insert({"user_id": "u1", "start_time": now, ...})
    await repo.update_by_id(ride.id, {"distance_km": 1.2})
    active = await repo.find_active_by_user("u1")

    await repo.close()
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel

from ...domain.models import RideRecord, RideStatus
from .schema import JSON_COLUMNS, RIDES_SCHEMA, UPDATABLE_COLUMNS

logger = logging.getLogger(__name__)


def _encode(column: str, value: Any) -> Any:
    """Convert a Python value into its SQLite column representation."""
    if column in JSON_COLUMNS:
        items = [
            item.model_dump(mode="json") if isinstance(item, BaseModel) else item
            for item in (value or [])
        ]
        return json.dumps(items)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _decode(row: aiosqlite.Row) -> RideRecord:
    data = dict(row)
    for column in JSON_COLUMNS:
        data[column] = json.loads(data.get(column) or "[]")
    return RideRecord.model_validate(data)


class AsyncRideRepository:
    """
    Async repository for ride persistence.

    Non-blocking SQLite operations using aiosqlite.
    All methods are async - no blocking I/O.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection: aiosqlite.Connection | None = None
        self._initialized = False

    async def init_schema(self) -> None:
        """Initialize database schema. Must be called after creation."""
        async with self._get_connection() as conn:
            await conn.executescript(RIDES_SCHEMA)
            await conn.commit()
        self._initialized = True
        logger.info("Async ride database initialized: %s", self.db_path)

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get async database connection with row factory."""
        conn = await aiosqlite.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            await conn.close()

    async def close(self) -> None:
        """Close any persistent connections."""
        if self._connection:
            await self._connection.close()
            self._connection = None
        logger.debug("Async repository closed")

    # =========================================================================
    # SessionStore Operations
    # =========================================================================

    async def insert(self, row: dict[str, Any]) -> RideRecord:
        """
        Create a ride row.

        Requires ``user_id``; ``id``, ``start_time`` and ``created_at`` are
        generated when absent.

        Returns:
            The stored RideRecord
        """
        if not row.get("user_id"):
            raise ValueError("user_id is required")

        now = datetime.now(UTC)
        values = {
            "id": row.get("id") or uuid.uuid4().hex,
            "user_id": row["user_id"],
            "status": row.get("status", RideStatus.IN_PROGRESS),
            "start_time": row.get("start_time") or now,
            "created_at": row.get("created_at") or now,
            "start_location": row.get("start_location"),
            "route_points": row.get("route_points", []),
            "distance_km": row.get("distance_km", 0.0),
            "photos": row.get("photos", []),
            "tagged_users": row.get("tagged_users", []),
        }
        columns = list(values)

        async with self._get_connection() as conn:
            await conn.execute(
                f"INSERT INTO rides ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                tuple(_encode(c, values[c]) for c in columns),
            )
            await conn.commit()

        record = await self.get_by_id(values["id"])
        if record is None:  # pragma: no cover - written above
            raise RuntimeError(f"ride {values['id']} vanished after insert")
        logger.debug("Ride row created: %s (user=%s)", record.id, record.user_id)
        return record

    async def update_by_id(self, ride_id: str, fields: dict[str, Any]) -> None:
        """
        Partial update of a ride row.

        Raises:
            ValueError: if a field is not an updatable column
        """
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"cannot update columns: {sorted(unknown)}")
        if not fields:
            return

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_encode(column, value) for column, value in fields.items()]

        async with self._get_connection() as conn:
            cursor = await conn.execute(
                f"UPDATE rides SET {assignments} WHERE id = ?",
                (*params, ride_id),
            )
            await conn.commit()
            if cursor.rowcount == 0:
                logger.warning("Update matched no ride: %s", ride_id)

    async def find_active_by_user(self, user_id: str) -> RideRecord | None:
        """Most recent in_progress ride for user, or None."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM rides
                WHERE user_id = ? AND status = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (user_id, RideStatus.IN_PROGRESS.value),
            )
            row = await cursor.fetchone()
            return _decode(row) if row else None

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_by_id(self, ride_id: str) -> RideRecord | None:
        """Get ride by id."""
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM rides WHERE id = ?", (ride_id,))
            row = await cursor.fetchone()
            return _decode(row) if row else None

    async def list_rides(
        self,
        user_id: str,
        status: RideStatus | None = RideStatus.COMPLETED,
        limit: int = 50,
    ) -> list[RideRecord]:
        """Rides for a user, newest first. ``status=None`` returns every status."""
        query = "SELECT * FROM rides WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(RideStatus(status).value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        async with self._get_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return [_decode(row) for row in rows]

    async def get_stats(self, user_id: str) -> dict:
        """Totals over a user's completed rides."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(distance_km), 0), COALESCE(SUM(duration_minutes), 0)
                FROM rides WHERE user_id = ? AND status = ?
                """,
                (user_id, RideStatus.COMPLETED.value),
            )
            row = await cursor.fetchone()

        count, distance, minutes = row if row else (0, 0.0, 0)
        return {
            "rides_total": count,
            "distance_km_total": round(distance, 3),
            "duration_minutes_total": minutes,
        }

    # =========================================================================
    # Export Operations
    # =========================================================================

    async def export_gpx(self, ride_id: str, output_path: str | Path) -> int:
        """
        Export ride route to GPX format.

        Returns:
            Number of track points exported
        """
        ride = await self.get_by_id(ride_id)
        if ride is None or not ride.route_points:
            return 0

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        gpx_lines = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<gpx version="1.1" creator="RideConnect">',
            '  <trk>',
            f'    <name>Ride {ride.id}</name>',
            '    <trkseg>',
        ]

        for p in ride.route_points:
            gpx_lines.append(f'      <trkpt lat="{p.lat}" lon="{p.lng}">')
            gpx_lines.append(f'        <time>{p.timestamp.isoformat()}</time>')
            gpx_lines.append('      </trkpt>')

        gpx_lines.extend([
            '    </trkseg>',
            '  </trk>',
            '</gpx>',
        ])

        output_path.write_text("\n".join(gpx_lines), encoding="utf-8")
        logger.info("Exported %d track points to GPX: %s", len(ride.route_points), output_path)
        return len(ride.route_points)
