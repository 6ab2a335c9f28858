"""Engine settings read from the process environment."""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite:///scheduler.db"


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}")


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}")


@dataclass(frozen=True)
class EngineSettings:
    database_url: str = DEFAULT_DATABASE_URL
    reminder_horizon: timedelta = timedelta(days=30)
    refresh_margin: timedelta = timedelta(days=7)
    sweep_interval: float = 60.0
    worker_count: int = 4
    insert_attempts: int = 3
    conflict_retries: int = 5
    adapter_timeout: float = 5.0
    max_instances: int = 2500

    def __post_init__(self):
        if self.refresh_margin <= timedelta(0):
            raise ValueError("REMINDER_REFRESH_MARGIN_DAYS must be positive")
        if self.reminder_horizon <= self.refresh_margin:
            raise ValueError(
                "REMINDER_HORIZON_DAYS must be greater than REMINDER_REFRESH_MARGIN_DAYS"
            )
        if self.worker_count < 1:
            raise ValueError("REMINDER_WORKER_COUNT must be at least 1")
        if self.insert_attempts < 1:
            raise ValueError("REMINDER_INSERT_ATTEMPTS must be at least 1")
        if self.conflict_retries < 0:
            raise ValueError("REMINDER_CONFLICT_RETRIES must not be negative")
        if self.sweep_interval <= 0 or self.adapter_timeout <= 0:
            raise ValueError("Intervals and timeouts must be positive")
        if self.max_instances < 1:
            raise ValueError("RECURRENCE_MAX_INSTANCES must be at least 1")

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "EngineSettings":
        return cls(
            database_url=environ.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            reminder_horizon=timedelta(days=_int(environ, "REMINDER_HORIZON_DAYS", 30)),
            refresh_margin=timedelta(
                days=_int(environ, "REMINDER_REFRESH_MARGIN_DAYS", 7)
            ),
            sweep_interval=_float(environ, "REMINDER_SWEEP_INTERVAL_SECONDS", 60.0),
            worker_count=_int(environ, "REMINDER_WORKER_COUNT", 4),
            insert_attempts=_int(environ, "REMINDER_INSERT_ATTEMPTS", 3),
            conflict_retries=_int(environ, "REMINDER_CONFLICT_RETRIES", 5),
            adapter_timeout=_float(environ, "FREEBUSY_ADAPTER_TIMEOUT_SECONDS", 5.0),
            max_instances=_int(environ, "RECURRENCE_MAX_INSTANCES", 2500),
        )


def load_settings(environ: Optional[Mapping[str, str]] = None) -> EngineSettings:
    """Load settings, reading a .env file first when one is present."""
    if environ is None:
        load_dotenv()
        environ = os.environ
    return EngineSettings.from_environ(environ)
