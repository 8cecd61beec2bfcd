"""Client for the per-warehouse weighbridge bridge (ScaleBridge).

Two kinds of calls go to the bridge:

* polling ``GET /api/weight`` - advisory, safe to repeat, degrades to a
  "disconnected" placeholder on failure;
* capturing ``POST /api/command`` - commits a physical reading (and photo) on
  the device, so it must never run twice for one logical reading. Every
  capture carries a token; results are remembered per token for a short TTL
  and concurrent calls with the same token wait for the first one. When a
  capture fails after the command may already have reached the device (a
  timeout or a dropped connection), the token stays "unresolved": a retry
  settles it from the live reading instead of weighing a second time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import anyio
import httpx

from .errors import DeviceUnavailable, ValidationFailed
from .utils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# Bridge command names for each reading role
CAPTURE_ACTIONS: Dict[str, str] = {"gross": "brutto", "tare": "tara"}

# Failures raised before the request left this process
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class _CommandRefused(Exception):
    """The bridge answered and said it did not record anything."""


_UNIT_TO_KG: Dict[str, float] = {
    "kg": 1.0,
    "g": 0.001,
    "t": 1000.0,
    "lb": 0.45359237,
}


@dataclass(frozen=True)
class BridgeConfig:
    url: str
    api_key: Optional[str] = None


@dataclass(frozen=True)
class WeightReading:
    weight_kg: float
    is_stable: bool
    is_connected: bool

    def to_dict(self) -> dict:
        return {
            "weight_kg": self.weight_kg,
            "is_stable": self.is_stable,
            "is_connected": self.is_connected,
        }


@dataclass(frozen=True)
class CapturedWeight:
    weight_kg: float
    captured_at: datetime
    photo_ref: Optional[str] = None


def bridge_base_url(address: str, default_port: int = 5055) -> str:
    """``10.0.0.5`` -> ``http://10.0.0.5:5055``; full URLs pass through."""
    address = address.strip().rstrip("/")
    if address.startswith(("http://", "https://")):
        return address
    if ":" in address:
        return f"http://{address}"
    return f"http://{address}:{default_port}"


def normalize_weight_payload(payload: dict) -> WeightReading:
    """Fold both bridge response shapes into one reading.

    Older bridges answer ``{weight, connected}``, newer ones
    ``{weight, unit, stable}``. A payload carrying a weight but no
    ``connected`` flag came from a live device.
    """
    if not isinstance(payload, dict) or "weight" not in payload:
        raise ValueError("weight missing from bridge response")
    weight = float(payload["weight"])
    unit = str(payload.get("unit") or "kg").strip().lower()
    if unit not in _UNIT_TO_KG:
        raise ValueError(f"unsupported weight unit '{unit}'")
    connected = bool(payload["connected"]) if "connected" in payload else True
    stable = bool(payload.get("stable", connected))
    return WeightReading(
        weight_kg=round(weight * _UNIT_TO_KG[unit], 3),
        is_stable=stable,
        is_connected=connected,
    )


class ConnectionTracker:
    """Connected flag that only drops after N consecutive failed polls."""

    def __init__(self, disconnect_after: int = 2) -> None:
        self.disconnect_after = max(1, disconnect_after)
        self.failures = 0
        self.last_connected = False

    def record_success(self, connected: bool) -> None:
        self.failures = 0
        self.last_connected = connected

    def record_failure(self) -> None:
        self.failures += 1

    @property
    def is_connected(self) -> bool:
        return self.last_connected and self.failures < self.disconnect_after


BridgeResolver = Callable[[int], BridgeConfig]


class ScaleBridgeAdapter:
    def __init__(
        self,
        resolver: BridgeResolver,
        *,
        timeout: float = 5.0,
        token_ttl: float = 120.0,
        disconnect_after: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._resolver = resolver
        self._timeout = timeout
        self._token_ttl = token_ttl
        self._disconnect_after = disconnect_after
        self._transport = transport
        self._clients: Dict[int, Tuple[BridgeConfig, httpx.AsyncClient]] = {}
        self._trackers: Dict[int, ConnectionTracker] = {}
        self._captures: Dict[str, Tuple[float, CapturedWeight]] = {}
        self._token_locks: Dict[str, asyncio.Lock] = {}
        self._token_expiry: Dict[str, float] = {}
        self._unresolved: Dict[str, float] = {}
        self._retired: List[httpx.AsyncClient] = []

    # -- plumbing ---------------------------------------------------------

    async def _client(self, warehouse_id: int) -> httpx.AsyncClient:
        # Resolvers may hit the database; keep that off the event loop
        config = await anyio.to_thread.run_sync(self._resolver, warehouse_id)
        cached = self._clients.get(warehouse_id)
        if cached and cached[0] == config:
            return cached[1]
        if cached:
            # Bridge address changed; the old client is closed in aclose()
            self._retired.append(cached[1])
            logger.info("scale bridge for warehouse %s moved to %s", warehouse_id, config.url)
        headers = {"ngrok-skip-browser-warning": "true"}
        if config.api_key:
            headers["X-API-Key"] = config.api_key
        client = httpx.AsyncClient(
            base_url=config.url,
            timeout=self._timeout,
            headers=headers,
            transport=self._transport,
        )
        self._clients[warehouse_id] = (config, client)
        return client

    def tracker(self, warehouse_id: int) -> ConnectionTracker:
        tracker = self._trackers.get(warehouse_id)
        if tracker is None:
            tracker = ConnectionTracker(self._disconnect_after)
            self._trackers[warehouse_id] = tracker
        return tracker

    def _purge_expired(self) -> None:
        now = time.monotonic()
        for token in [t for t, (expires, _) in self._captures.items() if expires <= now]:
            self._captures.pop(token, None)
        for token in [t for t, expires in self._unresolved.items() if expires <= now]:
            self._unresolved.pop(token, None)
        for token in [t for t, expires in self._token_expiry.items() if expires <= now]:
            lock = self._token_locks.get(token)
            if lock is not None and lock.locked():
                continue
            self._token_expiry.pop(token, None)
            self._token_locks.pop(token, None)

    async def aclose(self) -> None:
        clients = [client for _, client in self._clients.values()] + self._retired
        self._clients.clear()
        self._retired = []
        for client in clients:
            await client.aclose()

    # -- polling ----------------------------------------------------------

    async def read_current_weight(self, warehouse_id: int) -> WeightReading:
        """Advisory reading; never raises for device trouble."""
        tracker = self.tracker(warehouse_id)
        client = await self._client(warehouse_id)
        try:
            response = await client.get("/api/weight")
            response.raise_for_status()
            reading = normalize_weight_payload(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            tracker.record_failure()
            logger.debug("weight poll failed for warehouse %s: %s", warehouse_id, exc)
            return WeightReading(weight_kg=0.0, is_stable=False, is_connected=tracker.is_connected)
        tracker.record_success(reading.is_connected)
        return reading

    async def check_health(self, warehouse_id: int) -> dict:
        client = await self._client(warehouse_id)
        try:
            response = await client.get("/api/health")
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("scale bridge health check failed for warehouse %s: %s", warehouse_id, exc)
            raise DeviceUnavailable(
                f"Scale bridge for warehouse {warehouse_id} is not reachable"
            ) from exc

    # -- capturing --------------------------------------------------------

    async def capture_weight(
        self,
        warehouse_id: int,
        role: str,
        order_ref: Optional[int] = None,
        capture_token: Optional[str] = None,
    ) -> CapturedWeight:
        """Commit a gross or tare reading on the device.

        Retrying with the same *capture_token* within the TTL returns the
        first reading instead of weighing again. A token whose command may
        have reached the device without an answer is never sent again; the
        retry is settled from the live reading, or fails asking the operator
        to check the scale.
        """
        action = CAPTURE_ACTIONS.get(role)
        if action is None:
            raise ValidationFailed(f"Unknown capture role '{role}'")

        token = capture_token or uuid4().hex
        self._purge_expired()
        lock = self._token_locks.setdefault(token, asyncio.Lock())
        self._token_expiry[token] = time.monotonic() + self._token_ttl
        async with lock:
            cached = self._captures.get(token)
            if cached is not None:
                logger.info("capture token %s replayed for warehouse %s", token, warehouse_id)
                return cached[1]
            if token in self._unresolved:
                captured = await self._settle_unresolved(warehouse_id, role, token)
            else:
                captured = await self._send_capture(warehouse_id, role, action, order_ref, token)
            self._captures[token] = (time.monotonic() + self._token_ttl, captured)
            logger.info(
                "%s captured at warehouse %s: %.1f kg", role, warehouse_id, captured.weight_kg
            )
            return captured

    async def _send_capture(
        self,
        warehouse_id: int,
        role: str,
        action: str,
        order_ref: Optional[int],
        token: str,
    ) -> CapturedWeight:
        tracker = self.tracker(warehouse_id)
        client = await self._client(warehouse_id)
        body = {"action": action}
        if order_ref is not None:
            body["orderId"] = order_ref
        try:
            response = await client.post(
                "/api/command",
                json=body,
                headers={"X-Idempotency-Key": token},
            )
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict) and payload.get("success") is False:
                raise _CommandRefused(payload.get("error") or "bridge refused the command")
            response.raise_for_status()
            weight = float(payload["weight"])
        except (_CommandRefused, *_NOT_SENT) as exc:
            tracker.record_failure()
            logger.error("%s capture refused at warehouse %s: %s", role, warehouse_id, exc)
            raise DeviceUnavailable(
                f"Weighbridge at warehouse {warehouse_id} did not record the {role} weight"
            ) from exc
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            # The device may have weighed the vehicle; never post this token again
            tracker.record_failure()
            self._unresolved[token] = time.monotonic() + self._token_ttl
            logger.error(
                "%s capture at warehouse %s ended without a usable answer (token %s): %s",
                role,
                warehouse_id,
                token,
                exc,
            )
            raise DeviceUnavailable(
                f"Weighbridge at warehouse {warehouse_id} did not confirm the {role} weight; "
                "retry to read it back from the scale"
            ) from exc

        tracker.record_success(True)
        return CapturedWeight(
            weight_kg=weight,
            captured_at=parse_timestamp(payload.get("timestamp")),
            photo_ref=payload.get("photoUrl") or None,
        )

    async def _settle_unresolved(self, warehouse_id: int, role: str, token: str) -> CapturedWeight:
        reading = await self.read_current_weight(warehouse_id)
        if not reading.is_connected or not reading.is_stable or reading.weight_kg <= 0:
            raise DeviceUnavailable(
                f"Could not confirm the {role} weight at warehouse {warehouse_id}; "
                "check the scale display and retry"
            )
        self._unresolved.pop(token, None)
        logger.warning(
            "%s at warehouse %s settled from live reading %.1f kg after an unconfirmed capture",
            role,
            warehouse_id,
            reading.weight_kg,
        )
        return CapturedWeight(weight_kg=reading.weight_kg, captured_at=utcnow())


class WeightMonitor:
    """Live weight as an async stream instead of a bare polling timer.

    Closing the iterator (or cancelling the task consuming it) is the
    cancellation point; nothing keeps polling after that.
    """

    def __init__(self, adapter: ScaleBridgeAdapter, interval: float = 2.0) -> None:
        self._adapter = adapter
        self._interval = interval

    async def stream(
        self, warehouse_id: int, *, limit: Optional[int] = None
    ) -> AsyncIterator[WeightReading]:
        emitted = 0
        while limit is None or emitted < limit:
            yield await self._adapter.read_current_weight(warehouse_id)
            emitted += 1
            if limit is None or emitted < limit:
                await asyncio.sleep(self._interval)


__all__ = [
    "BridgeConfig",
    "WeightReading",
    "CapturedWeight",
    "ConnectionTracker",
    "ScaleBridgeAdapter",
    "WeightMonitor",
    "bridge_base_url",
    "normalize_weight_payload",
]
