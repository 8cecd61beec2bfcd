# plant_backend/config.py
from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Runtime settings, read from the environment when instantiated."""

    def __init__(self) -> None:
        # SQLite file next to the working directory unless overridden
        self.DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./plant.db")

        # Weighbridge bridge (ScaleBridge) defaults
        self.SCALE_BRIDGE_PORT = int(os.environ.get("SCALE_BRIDGE_PORT", "5055"))
        self.SCALE_TIMEOUT_SECONDS = float(os.environ.get("SCALE_TIMEOUT_SECONDS", "5.0"))
        self.SCALE_POLL_INTERVAL = float(os.environ.get("SCALE_POLL_INTERVAL", "2.0"))
        self.SCALE_DISCONNECT_AFTER_FAILURES = int(
            os.environ.get("SCALE_DISCONNECT_AFTER_FAILURES", "2")
        )
        self.CAPTURE_TOKEN_TTL_SECONDS = float(
            os.environ.get("CAPTURE_TOKEN_TTL_SECONDS", "120")
        )

        # Reject invoices that do not fit the order instead of flagging the overrun
        self.STRICT_QUOTA = _env_bool("STRICT_QUOTA", False)

        # Straight-line distance is stretched by this factor to approximate roads
        self.ROAD_DISTANCE_FACTOR = float(os.environ.get("ROAD_DISTANCE_FACTOR", "1.2"))

        self.LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def get_config() -> Config:
    return Config()


__all__ = ["Config", "get_config"]
