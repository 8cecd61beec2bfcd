"""Utility helpers shared across the backend services."""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Tuple

EARTH_RADIUS_KM = 6371.0


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the form stored in the database)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(raw: str | datetime | None) -> datetime:
    """Parse a timestamp coming from the scale bridge or a client into naive UTC."""
    if isinstance(raw, datetime):
        return to_naive_utc(raw)

    text = (raw or "").strip()
    if not text:
        return utcnow()

    parsers: Iterable[str] = (
        "%Y-%m-%dT%H:%M:%S.%fZ",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%d %H:%M",
        "%Y-%m-%d",
    )

    # First try Python's ISO parser which covers most cases, then iterate fallbacks.
    try:
        return to_naive_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    for fmt in parsers:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    return utcnow()


def parse_coordinates(raw: Optional[str]) -> Optional[Tuple[float, float]]:
    """Turn a ``"lat,lon"`` string into a tuple, or None when it is unusable."""
    if not raw:
        return None
    parts = [part.strip() for part in raw.split(",")]
    if len(parts) != 2:
        return None
    try:
        latitude, longitude = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return None
    return latitude, longitude


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def next_document_number(prefix: str, last_number: Optional[str], today: date) -> str:
    """Return the next daily sequence number, e.g. ``EXP-202610180003``.

    *prefix* may be empty (order numbers carry no prefix). The sequence resets
    every day and is always the last four digits.
    """
    stem = f"{prefix}-" if prefix else ""
    stem += today.strftime("%Y%m%d")
    sequence = 1
    if last_number and last_number.startswith(stem):
        try:
            sequence = int(last_number[-4:]) + 1
        except ValueError:
            sequence = 1
    return f"{stem}{sequence:04d}"


__all__ = [
    "utcnow",
    "to_naive_utc",
    "parse_timestamp",
    "parse_coordinates",
    "haversine_km",
    "next_document_number",
]
