"""Logging setup for the plant backend."""

from __future__ import annotations

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_ROOT_LOGGER_NAME = "plant_backend"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a single stream handler to the package logger.

    Calling this more than once only updates the level.
    """
    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    if not any(getattr(handler, "_plant_handler", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._plant_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel((level or "INFO").upper())
    return logger


__all__ = ["configure_logging", "LOG_FORMAT"]
