from __future__ import annotations

import asyncio

import pytest

from plant_backend.errors import (
    CaptureConflict,
    DeviceUnavailable,
    NegativeNetWeight,
    NotFound,
    ValidationFailed,
)
from plant_backend.invoices import finalize_session
from plant_backend.models import InvoiceStatus, InvoiceType
from plant_backend.scale import BridgeConfig, ScaleBridgeAdapter
from plant_backend.schemas import WeighingFinalize
from plant_backend.weighing import WeighingSession, WeighingSessionRegistry, corrected_weight, net_weight

from conftest import DRIVER, OPERATOR


@pytest.fixture()
def adapter(bridge):
    return ScaleBridgeAdapter(
        lambda warehouse_id: BridgeConfig(url="http://bridge.test:5055", api_key="secret"),
        transport=bridge.transport,
    )


def test_net_and_corrected_weight() -> None:
    assert net_weight(1000, 300) == 700
    assert corrected_weight(700, 10) == pytest.approx(630)
    assert net_weight(500, 500) == 0

    with pytest.raises(NegativeNetWeight):
        net_weight(300, 1000)
    with pytest.raises(ValidationFailed):
        corrected_weight(700, 100)


@pytest.mark.anyio
async def test_full_weighing_derives_net_and_corrected(adapter, bridge) -> None:
    bridge.capture_weights.extend([1000.0, 300.0])
    session = WeighingSession(actor=OPERATOR, warehouse_id=1, adapter=adapter)

    await session.record_gross()
    await session.record_tare()
    session.set_moisture(10)

    assert session.derived_net() == 700
    assert session.derived_corrected() == pytest.approx(630)
    assert session.effective_weight() == pytest.approx(630)
    assert [c["body"]["action"] for c in bridge.commands] == ["brutto", "tara"]
    assert all(c["api_key"] == "secret" for c in bridge.commands)
    await adapter.aclose()


@pytest.mark.anyio
async def test_effective_weight_falls_back_to_net_then_gross(adapter, bridge) -> None:
    bridge.capture_weights.extend([900.0, 250.0])
    session = WeighingSession(actor=OPERATOR, warehouse_id=1, adapter=adapter)

    await session.record_gross()
    assert session.derived_net() is None
    assert session.effective_weight() == 900

    await session.record_tare()
    assert session.effective_weight() == 650
    await adapter.aclose()


@pytest.mark.anyio
async def test_readings_are_write_once(adapter, bridge) -> None:
    bridge.capture_weights.extend([1000.0, 300.0])
    session = WeighingSession(actor=OPERATOR, warehouse_id=1, adapter=adapter)

    with pytest.raises(CaptureConflict):
        await session.record_tare()

    await session.record_gross()
    with pytest.raises(CaptureConflict):
        await session.record_gross()

    await session.record_tare()
    with pytest.raises(CaptureConflict):
        await session.record_tare()

    assert session.gross_weight == 1000
    assert len(bridge.commands) == 2
    await adapter.aclose()


@pytest.mark.anyio
async def test_second_capture_while_first_in_flight_is_rejected(adapter, bridge) -> None:
    bridge.delay = 0.05
    bridge.weight = 1200.0
    session = WeighingSession(actor=OPERATOR, warehouse_id=1, adapter=adapter)

    results = await asyncio.gather(session.record_gross(), session.record_gross(), return_exceptions=True)

    conflicts = [r for r in results if isinstance(r, CaptureConflict)]
    assert len(conflicts) == 1
    assert session.gross_weight == 1200
    assert len(bridge.commands) == 1
    await adapter.aclose()


@pytest.mark.anyio
async def test_tare_heavier_than_gross_is_reported(adapter, bridge) -> None:
    bridge.capture_weights.extend([300.0, 1000.0])
    session = WeighingSession(actor=OPERATOR, warehouse_id=1, adapter=adapter)
    await session.record_gross()
    await session.record_tare()

    with pytest.raises(NegativeNetWeight):
        session.derived_net()
    state = session.to_dict()
    assert state["net_valid"] is False
    assert state["net_weight_kg"] is None
    await adapter.aclose()


@pytest.mark.anyio
async def test_failed_capture_leaves_reading_empty_and_retry_reuses_token(adapter, bridge) -> None:
    bridge.fail_commands = True
    session = WeighingSession(actor=OPERATOR, warehouse_id=1, adapter=adapter)

    with pytest.raises(DeviceUnavailable):
        await session.record_gross()
    assert session.gross_weight is None

    bridge.fail_commands = False
    bridge.weight = 1000.0
    await session.record_gross()

    assert session.gross_weight == 1000
    tokens = {c["token"] for c in bridge.commands}
    assert tokens == {f"{session.session_id}-gross"}
    await adapter.aclose()


@pytest.mark.anyio
async def test_unanswered_capture_is_read_back_instead_of_weighed_again(adapter, bridge) -> None:
    bridge.drop_command_replies = True
    bridge.weight = 1000.0
    session = WeighingSession(actor=OPERATOR, warehouse_id=1, adapter=adapter)

    with pytest.raises(DeviceUnavailable):
        await session.record_gross()
    assert session.gross_weight is None

    bridge.drop_command_replies = False
    await session.record_gross()

    assert session.gross_weight == 1000
    assert [c["token"] for c in bridge.commands] == [f"{session.session_id}-gross"]
    await adapter.aclose()


@pytest.mark.anyio
async def test_unanswered_capture_with_scale_offline_is_not_resent(adapter, bridge) -> None:
    bridge.drop_command_replies = True
    session = WeighingSession(actor=OPERATOR, warehouse_id=1, adapter=adapter)

    with pytest.raises(DeviceUnavailable):
        await session.record_gross()

    bridge.drop_command_replies = False
    bridge.fail_polls = True
    with pytest.raises(DeviceUnavailable):
        await session.record_gross()
    assert session.gross_weight is None

    bridge.fail_polls = False
    bridge.weight = 980.0
    await session.record_gross()
    assert session.gross_weight == 980
    assert len(bridge.commands) == 1
    await adapter.aclose()


@pytest.mark.anyio
async def test_registry_keeps_one_session_per_actor_and_warehouse(adapter) -> None:
    registry = WeighingSessionRegistry(adapter)
    first = registry.open(OPERATOR, 1)
    assert registry.get(OPERATOR, 1) is first

    second = registry.open(OPERATOR, 1, order_ref=5)
    assert registry.get(OPERATOR, 1) is second
    assert second.session_id != first.session_id

    other = registry.open(DRIVER, 1)
    assert registry.get(OPERATOR, 1) is second
    assert registry.get(DRIVER, 1) is other

    registry.discard(OPERATOR, 1)
    with pytest.raises(NotFound):
        registry.get(OPERATOR, 1)
    await adapter.aclose()


@pytest.mark.anyio
async def test_finished_weighing_becomes_receipt(adapter, bridge, db_session, warehouse, config) -> None:
    bridge.capture_weights.extend([1000.0, 300.0])
    session = WeighingSession(actor=OPERATOR, warehouse_id=warehouse.id, adapter=adapter)
    await session.record_gross()
    await session.record_tare()
    session.set_moisture(10)

    invoice, view = finalize_session(
        db_session, session, WeighingFinalize(type=InvoiceType.RECEIPT), OPERATOR, config
    )

    assert view is None
    assert invoice.invoice_number.startswith("INC-")
    assert invoice.status == InvoiceStatus.DELIVERED.value
    assert invoice.net_weight_kg == 700
    assert invoice.corrected_weight_kg == pytest.approx(630)
    assert invoice.quantity == pytest.approx(630)
    assert invoice.gross_photo_ref == "/photos/1.jpg"
    assert invoice.gross_weight_at is not None
    await adapter.aclose()
