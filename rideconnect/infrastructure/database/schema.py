"""SQLite database schema for ride data."""

RIDES_SCHEMA = """
-- ============================================
-- RideConnect Rides Database Schema
-- Version: 1.0.0
-- ============================================

CREATE TABLE IF NOT EXISTS rides (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'in_progress'
        CHECK (status IN ('in_progress', 'completed', 'cancelled')),

    -- Timestamps (ISO-8601, UTC)
    start_time TEXT NOT NULL,
    end_time TEXT,
    created_at TEXT NOT NULL,

    -- Locations ("lat, lng")
    start_location TEXT,
    end_location TEXT,

    -- Track
    route_points TEXT NOT NULL DEFAULT '[]',  -- JSON array of route points
    distance_km REAL NOT NULL DEFAULT 0,
    duration_minutes INTEGER,

    -- Social
    photos TEXT NOT NULL DEFAULT '[]',        -- JSON array of media URLs
    description TEXT,
    tagged_users TEXT NOT NULL DEFAULT '[]'   -- JSON array of user ids
);

CREATE INDEX IF NOT EXISTS idx_rides_user_status ON rides(user_id, status);
CREATE INDEX IF NOT EXISTS idx_rides_created ON rides(created_at);
"""

# Columns that accept JSON-encoded lists
JSON_COLUMNS = frozenset({"route_points", "photos", "tagged_users"})

# Columns update_by_id may touch
UPDATABLE_COLUMNS = frozenset({
    "distance_km",
    "route_points",
    "duration_minutes",
    "photos",
    "status",
    "end_time",
    "end_location",
    "description",
    "tagged_users",
})
