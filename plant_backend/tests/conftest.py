from __future__ import annotations

import asyncio
import json
import os
import sys
from collections import deque
from datetime import date
from importlib import import_module
from pathlib import Path
from typing import Callable, Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from plant_backend.actors import Actor, Role
from plant_backend.config import Config
from plant_backend.models import Base, Order, OrderStatus, Warehouse

CREATOR = Actor(id=2, role=Role.MANAGER)
DIRECTOR = Actor(id=3, role=Role.DIRECTOR)
DISPATCHER = Actor(id=4, role=Role.DISPATCHER)
OPERATOR = Actor(id=5, role=Role.OPERATOR)
DRIVER = Actor(id=7, role=Role.DRIVER)


def headers_for(actor: Actor) -> dict:
    return {"X-Actor-Id": str(actor.id), "X-Actor-Role": actor.role.value}


class FakeBridge:
    """In-process stand-in for a weighbridge bridge, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.weight = 0.0
        self.connected = True
        self.modern_payload = False
        self.fail_polls = False
        self.fail_commands = False
        self.drop_command_replies = False
        self.delay = 0.0
        self.capture_weights: deque = deque()
        self.commands: list = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/weight":
            if self.fail_polls:
                raise httpx.ConnectError("bridge offline", request=request)
            if self.modern_payload:
                return httpx.Response(200, json={"weight": self.weight, "unit": "kg", "stable": True})
            return httpx.Response(200, json={"weight": self.weight, "connected": self.connected})
        if path == "/api/command":
            body = json.loads(request.content)
            self.commands.append(
                {
                    "body": body,
                    "token": request.headers.get("X-Idempotency-Key"),
                    "api_key": request.headers.get("X-API-Key"),
                }
            )
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.drop_command_replies:
                raise httpx.ReadTimeout("no reply from bridge", request=request)
            if self.fail_commands:
                return httpx.Response(500, json={"success": False, "error": "camera offline"})
            weight = self.capture_weights.popleft() if self.capture_weights else self.weight
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "weight": weight,
                    "photoUrl": f"/photos/{len(self.commands)}.jpg",
                    "timestamp": "2026-10-18T08:00:00Z",
                },
            )
        if path == "/api/health":
            if self.fail_polls:
                raise httpx.ConnectError("bridge offline", request=request)
            return httpx.Response(200, json={"status": "ok", "connected": self.connected})
        return httpx.Response(404, json={"error": "not found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture()
def config(monkeypatch: pytest.MonkeyPatch) -> Config:
    monkeypatch.delenv("STRICT_QUOTA", raising=False)
    return Config()


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """Sessions over a throwaway SQLite file; several sessions model concurrent writers."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'core.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def order_factory(db_session: Session) -> Callable[..., Order]:
    counter = {"n": 0}

    def _make(
        *,
        status: OrderStatus = OrderStatus.PENDING_DIRECTOR,
        quantity: float = 10.0,
        created_by: Actor = CREATOR,
        address: str = "Street A",
    ) -> Order:
        counter["n"] += 1
        order = Order(
            order_number=f"20261018{counter['n']:04d}",
            customer_id=1,
            concrete_mark_id=1,
            quantity_m3=quantity,
            payment_type="CASH",
            delivery_date=date(2026, 10, 20),
            delivery_time="09:00",
            delivery_address=address,
            coordinates="41.2856,69.2034",
            status=status.value,
            created_by_id=created_by.id,
        )
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make


@pytest.fixture()
def warehouse(db_session: Session) -> Warehouse:
    record = Warehouse(
        name="Main plant",
        latitude=41.3111,
        longitude=69.2797,
        scale_url="http://bridge.test:5055",
        scale_api_key="secret",
    )
    db_session.add(record)
    db_session.commit()
    db_session.refresh(record)
    return record


@pytest.fixture()
def api_client(
    tmp_path_factory: pytest.TempPathFactory,
    monkeypatch: pytest.MonkeyPatch,
    bridge: FakeBridge,
) -> Generator[TestClient, None, None]:
    """Provide a TestClient wired to an isolated SQLite database and a fake weighbridge."""
    repo_root = Path(__file__).resolve().parents[2]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))

    db_path = tmp_path_factory.mktemp("data") / "test_plant.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("SCALE_POLL_INTERVAL", "0")
    monkeypatch.delenv("STRICT_QUOTA", raising=False)

    # The engine is built at import time from DATABASE_URL
    for module in (
        "plant_backend.main",
        "plant_backend.load_seed",
        "plant_backend.route",
        "plant_backend.invoices",
        "plant_backend.database",
    ):
        sys.modules.pop(module, None)

    import_module("plant_backend.database")
    app_module = import_module("plant_backend.main")
    app_module.app.state.scale_transport = bridge.transport

    with TestClient(app_module.app) as client:
        yield client

    if db_path.exists():
        os.remove(db_path)
