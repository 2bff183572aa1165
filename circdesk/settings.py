"""Runtime settings read from the environment (and a local ``.env`` file)."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

_FALSEY = {"", "0", "false", "no", "off"}


def _int(key: str, default: int) -> int:
    return int(os.environ.get(key, str(default)) or default)


def _float(key: str, default: float) -> float:
    return float(os.environ.get(key, str(default)) or default)


def _flag(key: str, default: str) -> bool:
    return os.environ.get(key, default).strip().lower() not in _FALSEY


# Network configuration for the HTTP surface
HOST: str = os.environ.get("HOST", "127.0.0.1")
PORT: int = _int("PORT", 3000)

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class Settings:
    loan_days: int = 14
    daily_fine_rate: float = 10.0
    pickup_window_days: int = 3
    unclaimed_grace_hours: int = 24
    sweep_interval_seconds: float = 3600.0
    reconcile_interval_seconds: float = 3600.0
    commit_retries: int = 3
    scheduler_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            loan_days=_int("LOAN_DAYS", 14),
            daily_fine_rate=_float("DAILY_FINE_RATE", 10.0),
            pickup_window_days=_int("PICKUP_WINDOW_DAYS", 3),
            unclaimed_grace_hours=_int("UNCLAIMED_GRACE_HOURS", 24),
            sweep_interval_seconds=_float("SWEEP_INTERVAL_SECONDS", 3600.0),
            reconcile_interval_seconds=_float("RECONCILE_INTERVAL_SECONDS", 3600.0),
            commit_retries=_int("COMMIT_RETRIES", 3),
            scheduler_enabled=_flag("SCHEDULER_ENABLED", "0"),
        )


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
