"""
GeoSampler
==========

Adapter over the platform position stream. Knows nothing about rides:
a subscription delivers PositionSample objects to a callback until it is
unsubscribed, and ``get_current_position`` performs a one-shot read.

Usage:
    sampler = GeoSampler(lambda: AsyncGPSClient(GpsdSettings()))

    handle = sampler.subscribe(on_sample, on_error)
    ...
    sampler.unsubscribe(handle)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from ...domain.errors import LocationUnavailable
from ...domain.models import GPSPosition, PositionSample
from .gpsd_client import AsyncGPSClient, GpsdSettings, SimulatedGPSClient

if TYPE_CHECKING:
    from ...config import GPSConfig
    from ...config import SamplingConfig

logger = logging.getLogger(__name__)

SampleCallback = Callable[[PositionSample], None]
ErrorCallback = Callable[[LocationUnavailable], None]


class PositionSource(Protocol):
    """Anything that streams GPSPosition objects like AsyncGPSClient."""

    def stream_positions(self) -> AsyncIterator[GPSPosition]: ...

    async def get_position_once(self, timeout: float = 10.0) -> GPSPosition | None: ...

    async def stop(self) -> None: ...


SourceFactory = Callable[[], PositionSource]


@dataclass
class SamplingPolicy:
    """Sample-rate policy applied to every subscription."""

    min_interval_secs: float = 0.0  # 0 = platform cadence
    require_fix: bool = True

    @classmethod
    def from_config(cls, cfg: SamplingConfig) -> SamplingPolicy:
        return cls(min_interval_secs=cfg.min_interval_secs, require_fix=cfg.require_fix)


@dataclass(eq=False)
class Subscription:
    """Handle for one continuous position watch."""

    on_sample: SampleCallback
    on_error: ErrorCallback | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    active: bool = True
    delivered: int = 0
    dropped: int = 0
    _task: asyncio.Task | None = None
    _last_delivery: float | None = None


class GeoSampler:
    """Continuous and one-shot position reads over a PositionSource."""

    def __init__(
        self,
        source_factory: SourceFactory | None = None,
        policy: SamplingPolicy | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source_factory = source_factory or AsyncGPSClient
        self.policy = policy or SamplingPolicy()
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(UTC))
        self._subscriptions: set[Subscription] = set()

    @property
    def active_subscriptions(self) -> int:
        return sum(1 for sub in self._subscriptions if sub.active)

    def subscribe(
        self,
        on_sample: SampleCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Begin watching positions. Must be called with a running event loop."""
        sub = Subscription(on_sample=on_sample, on_error=on_error)
        sub._task = asyncio.get_running_loop().create_task(self._pump(sub))
        self._subscriptions.add(sub)
        logger.debug("Position subscription %s started", sub.id)
        return sub

    def unsubscribe(self, sub: Subscription | None) -> None:
        """Stop a watch. Unknown or already stopped handles are ignored."""
        if sub is None or not sub.active:
            return
        sub.active = False
        if sub._task is not None and not sub._task.done():
            sub._task.cancel()
        self._subscriptions.discard(sub)
        logger.debug(
            "Position subscription %s stopped (delivered=%d, dropped=%d)",
            sub.id,
            sub.delivered,
            sub.dropped,
        )

    async def get_current_position(self) -> PositionSample:
        """
        One-shot position read.

        Raises:
            LocationUnavailable: no fix within the timeout or gpsd unreachable
        """
        source = self._source_factory()
        try:
            position = await source.get_position_once(timeout=self.timeout)
        except (OSError, ConnectionError) as e:
            raise LocationUnavailable(f"Position read failed: {e}") from e

        if position is None:
            raise LocationUnavailable(f"No position fix within {self.timeout:.0f}s")
        return PositionSample.from_position(position, now=self._clock())

    async def aclose(self) -> None:
        """Stop every subscription and wait for the watch tasks to finish."""
        tasks = [sub._task for sub in self._subscriptions if sub._task is not None]
        for sub in list(self._subscriptions):
            self.unsubscribe(sub)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _accept(self, sub: Subscription, position: GPSPosition) -> bool:
        if self.policy.require_fix and not position.has_fix:
            return False
        if self.policy.min_interval_secs > 0 and sub._last_delivery is not None:
            if time.monotonic() - sub._last_delivery < self.policy.min_interval_secs:
                return False
        return True

    async def _pump(self, sub: Subscription) -> None:
        source = self._source_factory()
        try:
            async with aclosing(source.stream_positions()) as stream:
                async for position in stream:
                    if not sub.active:
                        break
                    if not self._accept(sub, position):
                        sub.dropped += 1
                        continue

                    sub._last_delivery = time.monotonic()
                    sub.delivered += 1
                    sample = PositionSample.from_position(position, now=self._clock())
                    try:
                        sub.on_sample(sample)
                    except Exception as e:
                        logger.error("Sample callback error: %s", e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Position stream failed: %s", e)
            self._report(sub, LocationUnavailable(f"Position stream failed: {e}"))
        else:
            if sub.active:
                self._report(sub, LocationUnavailable("Position stream ended"))
        finally:
            await source.stop()

    def _report(self, sub: Subscription, error: LocationUnavailable) -> None:
        if sub.on_error is None:
            return
        try:
            sub.on_error(error)
        except Exception as e:
            logger.error("Error callback failed: %s", e)


def source_factory_from_config(cfg: GPSConfig) -> SourceFactory:
    """Build a PositionSource factory from the ``gps`` config section."""
    if cfg.mock_mode:
        return lambda: SimulatedGPSClient(
            start_lat=cfg.mock_lat,
            start_lon=cfg.mock_lon,
            speed_mps=cfg.mock_speed_mps,
        )

    settings = GpsdSettings(
        host=cfg.host,
        port=cfg.port,
        reconnect_delay=cfg.reconnect_delay,
        timeout=cfg.timeout,
        max_reconnect_attempts=cfg.max_reconnect_attempts,
    )
    return lambda: AsyncGPSClient(settings)
