"""Gross/tare capture for one operator at one weighbridge."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple
from uuid import uuid4

from .actors import Actor
from .errors import CaptureConflict, NegativeNetWeight, NotFound, ValidationFailed
from .scale import CapturedWeight, ScaleBridgeAdapter

logger = logging.getLogger(__name__)


def net_weight(gross: float, tare: float) -> float:
    net = gross - tare
    if net < 0:
        raise NegativeNetWeight(
            f"Tare weight {tare:.1f} kg exceeds gross weight {gross:.1f} kg; re-weigh the vehicle"
        )
    return net


def corrected_weight(net: float, moisture_percent: float) -> float:
    if not 0.0 <= moisture_percent < 100.0:
        raise ValidationFailed("Moisture must be between 0 and 100 percent")
    return net * (1 - moisture_percent / 100)


@dataclass
class WeighingSession:
    """In-progress weighing; never persisted, never shared between actors.

    Each reading is write-once. Re-weighing means starting a new session.
    """

    actor: Actor
    warehouse_id: int
    adapter: ScaleBridgeAdapter
    order_ref: Optional[int] = None
    gross_weight: Optional[float] = None
    gross_captured_at: Optional[datetime] = None
    gross_photo_ref: Optional[str] = None
    tare_weight: Optional[float] = None
    tare_captured_at: Optional[datetime] = None
    tare_photo_ref: Optional[str] = None
    moisture_percent: Optional[float] = None
    session_id: str = field(default_factory=lambda: uuid4().hex)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _tokens: Dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def capture_in_progress(self) -> bool:
        return self._lock.locked()

    async def _capture(self, role: str) -> CapturedWeight:
        if self._lock.locked():
            raise CaptureConflict("Another capture is already running for this weighing")
        async with self._lock:
            # Keep the token across retries so a timed-out request is not weighed twice
            token = self._tokens.setdefault(role, f"{self.session_id}-{role}")
            return await self.adapter.capture_weight(
                self.warehouse_id, role, order_ref=self.order_ref, capture_token=token
            )

    async def record_gross(self) -> CapturedWeight:
        if self.gross_weight is not None:
            raise CaptureConflict("Gross weight is already recorded for this weighing")
        captured = await self._capture("gross")
        self.gross_weight = captured.weight_kg
        self.gross_captured_at = captured.captured_at
        self.gross_photo_ref = captured.photo_ref
        return captured

    async def record_tare(self) -> CapturedWeight:
        if self.gross_weight is None:
            raise CaptureConflict("Record the gross weight before the tare weight")
        if self.tare_weight is not None:
            raise CaptureConflict("Tare weight is already recorded for this weighing")
        captured = await self._capture("tare")
        self.tare_weight = captured.weight_kg
        self.tare_captured_at = captured.captured_at
        self.tare_photo_ref = captured.photo_ref
        return captured

    def set_moisture(self, moisture_percent: Optional[float]) -> None:
        if moisture_percent is not None and not 0.0 <= moisture_percent < 100.0:
            raise ValidationFailed("Moisture must be between 0 and 100 percent")
        self.moisture_percent = moisture_percent

    def derived_net(self) -> Optional[float]:
        if self.gross_weight is None or self.tare_weight is None:
            return None
        return net_weight(self.gross_weight, self.tare_weight)

    def derived_corrected(self, moisture_percent: Optional[float] = None) -> Optional[float]:
        moisture = self.moisture_percent if moisture_percent is None else moisture_percent
        if moisture is None:
            return None
        net = self.derived_net()
        if net is None:
            return None
        return corrected_weight(net, moisture)

    def effective_weight(self) -> Optional[float]:
        corrected = self.derived_corrected()
        if corrected is not None:
            return corrected
        net = self.derived_net()
        if net is not None:
            return net
        return self.gross_weight

    def to_dict(self) -> dict:
        try:
            net = self.derived_net()
            corrected = self.derived_corrected()
            net_valid = True
        except NegativeNetWeight:
            net, corrected, net_valid = None, None, False
        return {
            "session_id": self.session_id,
            "warehouse_id": self.warehouse_id,
            "order_id": self.order_ref,
            "gross_weight_kg": self.gross_weight,
            "gross_captured_at": self.gross_captured_at,
            "tare_weight_kg": self.tare_weight,
            "tare_captured_at": self.tare_captured_at,
            "moisture_percent": self.moisture_percent,
            "net_weight_kg": net,
            "corrected_weight_kg": corrected,
            "net_valid": net_valid,
            "capture_in_progress": self.capture_in_progress,
        }


class WeighingSessionRegistry:
    """Open sessions keyed by (actor, warehouse)."""

    def __init__(self, adapter: ScaleBridgeAdapter) -> None:
        self._adapter = adapter
        self._sessions: Dict[Tuple[int, int], WeighingSession] = {}

    def open(self, actor: Actor, warehouse_id: int, order_ref: Optional[int] = None) -> WeighingSession:
        key = (actor.id, warehouse_id)
        previous = self._sessions.get(key)
        if previous is not None:
            if previous.capture_in_progress:
                raise CaptureConflict("A capture is still running for the current weighing")
            logger.info(
                "actor %s abandoned weighing %s at warehouse %s",
                actor.id,
                previous.session_id,
                warehouse_id,
            )
        session = WeighingSession(
            actor=actor, warehouse_id=warehouse_id, adapter=self._adapter, order_ref=order_ref
        )
        self._sessions[key] = session
        return session

    def get(self, actor: Actor, warehouse_id: int) -> WeighingSession:
        session = self._sessions.get((actor.id, warehouse_id))
        if session is None:
            raise NotFound("No weighing in progress at this warehouse")
        return session

    def discard(self, actor: Actor, warehouse_id: int) -> None:
        self._sessions.pop((actor.id, warehouse_id), None)


__all__ = [
    "net_weight",
    "corrected_weight",
    "WeighingSession",
    "WeighingSessionRegistry",
]
