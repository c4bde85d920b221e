"""GPS infrastructure - gpsd client, position sampling and distance."""

from .distance import NoiseFilter, accumulate, haversine, route_distance
from .gpsd_client import AsyncGPSClient, GpsdSettings, SimulatedGPSClient, parse_tpv
from .sampler import GeoSampler, SamplingPolicy, Subscription, source_factory_from_config

__all__ = [
    "AsyncGPSClient",
    "GeoSampler",
    "GpsdSettings",
    "NoiseFilter",
    "SamplingPolicy",
    "SimulatedGPSClient",
    "Subscription",
    "accumulate",
    "haversine",
    "parse_tpv",
    "route_distance",
    "source_factory_from_config",
]
