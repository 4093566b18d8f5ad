"""
Engine configuration.

Values come from the environment (optionally a local .env file) so the
same code runs unchanged in tests, workers and the API process.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

LOGGER_NAME = "widget_engine"


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip() or default


def _env_int(key: str, default: int) -> int:
    value = _env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    value = _env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    cache_ttl_seconds: int = 3600
    cache_max_entries: int = 512
    compute_timeout_seconds: float = 30.0   # 0 disables the deadline
    default_range_days: int = 30
    executor_workers: int = 2
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            cache_ttl_seconds=_env_int("WIDGET_CACHE_TTL_SECONDS", 3600),
            cache_max_entries=_env_int("WIDGET_CACHE_MAX_ENTRIES", 512),
            compute_timeout_seconds=_env_float("WIDGET_COMPUTE_TIMEOUT_SECONDS", 30.0),
            default_range_days=_env_int("WIDGET_DEFAULT_RANGE_DAYS", 30),
            executor_workers=_env_int("WIDGET_EXECUTOR_WORKERS", 2),
            log_level=(_env("WIDGET_LOG_LEVEL", "INFO") or "INFO").upper(),
        )


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a stream handler to the engine logger (idempotent)."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or Settings.from_env().log_level).upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s"
        ))
        logger.addHandler(handler)
    return logger
