"""
gpsd position source
====================

Reads TPV reports from a gpsd daemon over its JSON socket protocol and
yields GPSPosition objects. Connection loss is retried after
``reconnect_delay``; the stream simply ends once ``max_reconnect_attempts``
consecutive connects have failed.

``SimulatedGPSClient`` replaces the socket with a rider heading along a
straight road, for ``--mock`` runs and tests.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass

from ...domain.models import GPSPosition

logger = logging.getLogger(__name__)

WATCH_ON = b'?WATCH={"enable":true,"json":true}\n'
WATCH_OFF = b'?WATCH={"enable":false}\n'

# gpsd "eph" is metres of horizontal error; hdop * 5 approximates the same
EPH_PER_HDOP = 5.0


@dataclass
class GpsdSettings:
    """Where gpsd listens and how hard to try reaching it."""

    host: str = "localhost"
    port: int = 2947
    reconnect_delay: float = 5.0
    timeout: float = 10.0
    max_reconnect_attempts: int = 0  # 0 = keep trying


def parse_tpv(report: dict, satellites: int = 0) -> GPSPosition | None:
    """
    Build a position from a gpsd TPV report.

    Mode 2/3 (2D/3D) map to fix_quality 1/2; reports without lat/lon, or
    with values that do not convert, give None.
    """
    if "lat" not in report or "lon" not in report:
        return None

    hdop = report.get("hdop")
    if hdop is None and report.get("eph") is not None:
        hdop = float(report["eph"]) / EPH_PER_HDOP

    try:
        return GPSPosition(
            latitude=float(report["lat"]),
            longitude=float(report["lon"]),
            altitude=report.get("altMSL", report.get("alt")),
            speed=report.get("speed"),
            heading=report.get("track"),
            hdop=hdop,
            fix_quality=max(0, int(report.get("mode", 0)) - 1),
            satellites=satellites,
        )
    except (TypeError, ValueError) as e:
        logger.error("Unusable TPV report %s: %s", report, e)
        return None


class AsyncGPSClient:
    """
    One gpsd connection serving one position stream.

    The GeoSampler builds a fresh client per subscription and per one-shot
    read, so ``stop()`` ends the client for good.
    """

    def __init__(self, settings: GpsdSettings | None = None) -> None:
        self.settings = settings or GpsdSettings()
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._running = False
        self._failed_connects = 0
        self.last_position: GPSPosition | None = None
        self.fixes = 0
        self.errors = 0
        self.satellites = 0

    @property
    def is_connected(self) -> bool:
        return self._writer is not None

    async def connect(self) -> bool:
        """Open the gpsd socket and enable JSON watch mode."""
        where = f"{self.settings.host}:{self.settings.port}"
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.settings.host, self.settings.port),
                timeout=self.settings.timeout,
            )
            self._writer.write(WATCH_ON)
            await self._writer.drain()
        except asyncio.TimeoutError:
            logger.warning("gpsd at %s did not answer within %.0fs", where, self.settings.timeout)
        except OSError as e:
            logger.warning("gpsd at %s unreachable: %s", where, e)
        else:
            self._failed_connects = 0
            logger.info("Connected to gpsd at %s", where)
            return True

        self.errors += 1
        self._reader = self._writer = None
        return False

    async def disconnect(self) -> None:
        writer, self._reader, self._writer = self._writer, None, None
        if writer is None:
            return
        try:
            writer.write(WATCH_OFF)
            await writer.drain()
            writer.close()
            await writer.wait_closed()
        except OSError as e:
            logger.debug("gpsd disconnect: %s", e)

    async def _ensure_connected(self) -> bool:
        """Connect, sleeping between failed attempts. False means give up."""
        while self._running and not self.is_connected:
            if await self.connect():
                return True
            self._failed_connects += 1
            limit = self.settings.max_reconnect_attempts
            if limit and self._failed_connects >= limit:
                logger.error("Giving up on gpsd after %d failed connects", self._failed_connects)
                return False
            await asyncio.sleep(self.settings.reconnect_delay)
        return self._running

    async def _next_report(self) -> dict | None:
        """Read one JSON report; None on read timeout or garbage."""
        try:
            line = await asyncio.wait_for(self._reader.readline(), timeout=self.settings.timeout)
        except asyncio.TimeoutError:
            return None
        if not line:
            raise ConnectionError("gpsd closed the connection")
        try:
            return json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed gpsd line: %s", e)
            return None

    async def stream_positions(self) -> AsyncIterator[GPSPosition]:
        """Yield positions as gpsd reports them until stopped or given up."""
        self._running = True
        while await self._ensure_connected():
            try:
                report = await self._next_report()
            except OSError as e:  # ConnectionError included
                logger.warning("gpsd stream lost (%s), reconnecting", e)
                self.errors += 1
                await self.disconnect()
                await asyncio.sleep(self.settings.reconnect_delay)
                continue

            if report is None:
                continue
            kind = report.get("class")
            if kind == "SKY":
                self.satellites = len(report.get("satellites", []))
            elif kind == "TPV":
                position = parse_tpv(report, self.satellites)
                if position is not None:
                    self.last_position = position
                    self.fixes += 1
                    yield position

    async def get_position_once(self, timeout: float = 10.0) -> GPSPosition | None:
        """First position with a fix, or None if none arrives within ``timeout``."""
        try:
            async with asyncio.timeout(timeout):
                async with aclosing(self.stream_positions()) as stream:
                    async for position in stream:
                        if position.has_fix:
                            return position
        except TimeoutError:
            logger.warning("No GPS fix within %.1fs", timeout)
        finally:
            await self.stop()
        return None

    async def stop(self) -> None:
        self._running = False
        await self.disconnect()


class SimulatedGPSClient(AsyncGPSClient):
    """Rider moving at ``speed_mps`` along ``heading`` from a start point."""

    def __init__(
        self,
        start_lat: float = -23.5505,  # Sao Paulo
        start_lon: float = -46.6333,
        speed_mps: float = 12.0,
        heading: float = 90.0,
        interval: float = 1.0,
    ) -> None:
        super().__init__()
        self.start_lat = start_lat
        self.start_lon = start_lon
        self.speed_mps = speed_mps
        self.heading = heading
        self.interval = interval
        self._tick = 0

    def position_at(self, tick: int) -> GPSPosition:
        km = self.speed_mps * self.interval * tick / 1000.0
        bearing = math.radians(self.heading)
        km_per_deg = 111.195
        lon_scale = max(0.01, math.cos(math.radians(self.start_lat)))
        return GPSPosition(
            latitude=self.start_lat + km * math.cos(bearing) / km_per_deg,
            longitude=self.start_lon + km * math.sin(bearing) / (km_per_deg * lon_scale),
            altitude=760.0,
            speed=self.speed_mps,
            heading=self.heading,
            hdop=1.0,
            satellites=8,
            fix_quality=2,
        )

    async def connect(self) -> bool:
        logger.info("Simulated GPS started at %.4f, %.4f", self.start_lat, self.start_lon)
        return True

    async def stream_positions(self) -> AsyncIterator[GPSPosition]:
        self._running = True
        await self.connect()
        while self._running:
            position = self.position_at(self._tick)
            self._tick += 1
            self.last_position = position
            self.fixes += 1
            yield position
            await asyncio.sleep(self.interval)
