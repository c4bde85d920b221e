"""Root logger configuration shared by the CLI commands."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from .config import LoggingConfig

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(cfg: LoggingConfig, verbose: bool = False) -> None:
    """Configure the root logger from the ``logging`` config section."""
    level = logging.DEBUG if verbose else getattr(logging, cfg.level)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if cfg.to_file:
        cfg.base_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(cfg.file_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        )

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    # aiosqlite logs every statement at DEBUG
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
