from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

CONFIG_ENV = "RIDECONNECT_CONFIG"


class LoggingConfig(BaseModel):
    level: str = Field("INFO")
    base_dir: Path = Field(Path("logs"))
    file_name: str = Field("rideconnect.log")
    to_file: bool = Field(False)

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level: {value}")
        return level

    @field_validator("base_dir")
    @classmethod
    def _expand_base_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def file_path(self) -> Path:
        return self.base_dir / self.file_name


class GPSConfig(BaseModel):
    """GPS daemon configuration."""

    host: str = Field("localhost")
    port: int = Field(2947, ge=1, le=65535)
    timeout: float = Field(10.0, ge=1.0)  # one-shot read timeout
    reconnect_delay: float = Field(5.0, ge=0.1)
    max_reconnect_attempts: int = Field(0, ge=0)  # 0 = infinite
    mock_mode: bool = Field(False)  # Use simulated GPS
    mock_lat: float = Field(-23.5505, ge=-90, le=90)  # Sao Paulo default
    mock_lon: float = Field(-46.6333, ge=-180, le=180)
    mock_speed_mps: float = Field(12.0, ge=0)


class SamplingConfig(BaseModel):
    """Sample-rate policy. 0 keeps the platform cadence."""

    min_interval_secs: float = Field(0.0, ge=0.0, le=60.0)
    require_fix: bool = Field(True)


class NoiseFilterConfig(BaseModel):
    """Optional GPS plausibility filter. Off by default."""

    enabled: bool = Field(False)
    max_accuracy_m: float = Field(50.0, gt=0)
    min_movement_km: float = Field(0.005, ge=0)
    max_speed_kmh: float = Field(300.0, gt=0)
    max_bad_readings: int = Field(10, ge=1)


class TrackingConfig(BaseModel):
    checkpoint_every: int = Field(10, ge=1, le=1000)
    tick_interval_secs: float = Field(1.0, gt=0, le=60.0)
    filter: NoiseFilterConfig = Field(default_factory=NoiseFilterConfig)


class DatabaseConfig(BaseModel):
    path: Path = Field(Path("logs/rides.db"))

    @field_validator("path")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return value.expanduser()


class ActorConfig(BaseModel):
    user_env: str = Field("RIDECONNECT_USER")

    @field_validator("user_env")
    @classmethod
    def _validate_env_name(cls, value: str) -> str:
        if not value or any(c.isspace() for c in value):
            raise ValueError("user_env must be an environment variable name")
        return value


class RideConnectConfig(BaseModel):
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    gps: GPSConfig = Field(default_factory=GPSConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    actor: ActorConfig = Field(default_factory=ActorConfig)


def load_config(path: Path) -> RideConnectConfig:
    with Path(path).expanduser().open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    try:
        return RideConnectConfig.model_validate(raw)
    except ValidationError as exc:  # pragma: no cover - formatting
        raise ValueError(str(exc)) from exc


def load_config_or_default(path: Path | None) -> RideConnectConfig:
    """Load the resolved config file, or defaults when none exists."""
    resolved = resolve_config_path(path)
    if not resolved.exists():
        return RideConnectConfig()
    return load_config(resolved)


def resolve_config_path(cli_path: Path | None) -> Path:
    """Resolve config path by priority: CLI, env, /etc/rideconnect, repo configs."""
    candidates: list[Path] = []
    if cli_path:
        p = Path(cli_path).expanduser()
        if p.exists():
            return p.resolve()
        candidates.append(p)
    env = os.environ.get(CONFIG_ENV)
    if env:
        p = Path(env).expanduser()
        if p.exists():
            return p.resolve()
        candidates.append(p)
    for p in [Path("/etc/rideconnect/rideconnect.yml"), Path("configs/rideconnect.yml")]:
        if p.exists():
            return p.resolve()
        candidates.append(p)
    # Fallback to first candidate even if not exists to surface errors consistently
    return candidates[0] if candidates else Path("configs/rideconnect.yml").resolve()
