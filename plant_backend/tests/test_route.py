from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from plant_backend.actors import Actor, Role
from plant_backend.errors import InvalidTransition, ValidationFailed
from plant_backend.invoices import cancel_invoice, create_invoice
from plant_backend.ledger import reconcile_order
from plant_backend.models import InvoiceStatus, InvoiceType, OrderStatus
from plant_backend.notifications import INVOICE_COMPLETED, NotificationHub
from plant_backend.orders import list_orders
from plant_backend.route import record_checkpoint, route_progress
from plant_backend.schemas import InvoiceCreate

from conftest import DISPATCHER, DRIVER, OPERATOR

START = datetime(2026, 10, 18, 8, 0)


@pytest.fixture()
def delivery(db_session, order_factory, warehouse, config):
    order = order_factory(status=OrderStatus.DISPATCHED, quantity=100)
    payload = InvoiceCreate(
        type=InvoiceType.DELIVERY,
        order_id=order.id,
        warehouse_id=warehouse.id,
        driver_id=DRIVER.id,
        quantity=40,
    )
    invoice, _ = create_invoice(db_session, payload, OPERATOR, config)
    return invoice


def _record(db, invoice, name, minutes, config, **kwargs):
    return record_checkpoint(
        db, invoice.id, name, DRIVER, at=START + timedelta(minutes=minutes), config=config, **kwargs
    )


def test_full_route_completes_invoice_without_changing_remaining(db_session, delivery, config) -> None:
    hub = NotificationHub()
    seen = []
    hub.subscribe(seen.append)

    accepted = _record(db_session, delivery, "accepted", 0, config)
    assert accepted.status == InvoiceStatus.IN_TRANSIT.value
    assert reconcile_order(accepted.order).remaining_quantity == 60

    arrived = _record(db_session, delivery, "arrived_at_site", 30, config, latitude=41.2856, longitude=69.2034)
    assert arrived.status == InvoiceStatus.ARRIVED.value
    assert arrived.distance_km is not None and arrived.distance_km > 0
    assert arrived.arrived_site_latitude == 41.2856

    _record(db_session, delivery, "departed_from_site", 60, config)
    done = _record(db_session, delivery, "arrived_at_plant", 90, config, notifier=hub)

    assert done.status == InvoiceStatus.COMPLETED.value
    view = reconcile_order(done.order)
    assert view.delivered_quantity == 40
    assert view.in_progress_quantity == 0
    assert view.remaining_quantity == 60
    assert [n.event for n in seen] == [INVOICE_COMPLETED]
    assert all(value is not None for value in route_progress(done).values())


def test_checkpoints_cannot_be_skipped(db_session, delivery, config) -> None:
    with pytest.raises(InvalidTransition):
        _record(db_session, delivery, "arrived_at_site", 10, config)
    _record(db_session, delivery, "accepted", 0, config)
    with pytest.raises(InvalidTransition):
        _record(db_session, delivery, "arrived_at_plant", 10, config)


def test_resending_same_checkpoint_is_a_no_op(db_session, delivery, config) -> None:
    first = _record(db_session, delivery, "accepted", 0, config)
    again = _record(db_session, delivery, "accepted", 0, config)
    assert again.accepted_at == first.accepted_at
    assert again.status == InvoiceStatus.IN_TRANSIT.value

    with pytest.raises(InvalidTransition):
        _record(db_session, delivery, "accepted", 5, config)


def test_earlier_checkpoint_after_later_one_is_rejected(db_session, delivery, config) -> None:
    _record(db_session, delivery, "accepted", 0, config)
    _record(db_session, delivery, "arrived_at_site", 30, config)
    with pytest.raises(InvalidTransition):
        _record(db_session, delivery, "accepted", 45, config)
    with pytest.raises(ValidationFailed):
        _record(db_session, delivery, "departed_from_site", 20, config)


def test_only_assigned_driver_reports(db_session, delivery, config) -> None:
    other_driver = Actor(id=70, role=Role.DRIVER)
    with pytest.raises(InvalidTransition):
        record_checkpoint(db_session, delivery.id, "accepted", other_driver, config=config)
    with pytest.raises(InvalidTransition):
        record_checkpoint(db_session, delivery.id, "accepted", DISPATCHER, config=config)


def test_canceled_invoice_frees_volume_and_rejects_route(db_session, delivery, config) -> None:
    canceled = cancel_invoice(db_session, delivery.id, DISPATCHER)
    assert canceled.status == InvoiceStatus.CANCELED.value
    assert reconcile_order(canceled.order).remaining_quantity == 100

    with pytest.raises(InvalidTransition):
        _record(db_session, delivery, "accepted", 0, config)


def test_started_route_cannot_be_canceled(db_session, delivery, config) -> None:
    _record(db_session, delivery, "accepted", 0, config)
    with pytest.raises(InvalidTransition):
        cancel_invoice(db_session, delivery.id, DISPATCHER)


def test_unknown_checkpoint_is_rejected(db_session, delivery, config) -> None:
    with pytest.raises(ValidationFailed):
        record_checkpoint(db_session, delivery.id, "lunch_break", DRIVER, config=config)


def test_driver_sees_orders_they_carry(db_session, delivery, order_factory) -> None:
    order_factory(status=OrderStatus.DISPATCHED)

    carried = list_orders(db_session, driver_id=DRIVER.id)
    assert [order.id for order in carried["data"]] == [delivery.order_id]
    assert carried["meta"]["total"] == 1

    assert list_orders(db_session, driver_id=70)["data"] == []
