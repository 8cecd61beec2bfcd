"""Order records: creation, scheduling edits, listings and reconciliation reads."""

from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .actors import ORDER_CREATORS, Actor
from .errors import InvalidTransition, ValidationFailed
from .ledger import ReconciliationView, reconcile_order
from .models import Invoice, Order, OrderStatus
from .notifications import ORDER_AWAITING_APPROVAL, NotificationHub
from .schemas import OrderCreate, OrderScheduleUpdate
from .utils import next_document_number, parse_coordinates, utcnow
from .workflow import SCHEDULE_EDITABLE, get_order

logger = logging.getLogger(__name__)

# Orders a director still has to look at
DIRECTOR_QUEUE = (OrderStatus.PENDING_DIRECTOR.value, OrderStatus.APPROVED_BY_DIRECTOR.value)


def generate_order_number(db: Session, today: Optional[date] = None) -> str:
    today = today or utcnow().date()
    prefix = today.strftime("%Y%m%d")
    last = (
        db.query(Order.order_number)
        .filter(Order.order_number.like(f"{prefix}%"))
        .order_by(Order.order_number.desc())
        .first()
    )
    return next_document_number("", last[0] if last else None, today)


def create_order(
    db: Session,
    payload: OrderCreate,
    actor: Actor,
    notifier: Optional[NotificationHub] = None,
) -> Order:
    if actor.role not in ORDER_CREATORS:
        raise InvalidTransition(f"A {actor.role.value} cannot open orders")
    if payload.coordinates and parse_coordinates(payload.coordinates) is None:
        raise ValidationFailed("Coordinates must look like 'latitude,longitude'")

    status = OrderStatus.PENDING_DIRECTOR if payload.submit else OrderStatus.DRAFT
    order = Order(
        order_number=generate_order_number(db),
        customer_id=payload.customer_id,
        concrete_mark_id=payload.concrete_mark_id,
        quantity_m3=payload.quantity_m3,
        payment_type=payload.payment_type,
        delivery_date=payload.delivery_date,
        delivery_time=payload.delivery_time,
        delivery_address=payload.delivery_address,
        coordinates=payload.coordinates,
        notes=payload.notes,
        status=status.value,
        created_by_id=actor.id,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("order %s opened by %s#%s as %s", order.order_number, actor.role.value, actor.id, order.status)
    if status is OrderStatus.PENDING_DIRECTOR and notifier is not None:
        notifier.emit(ORDER_AWAITING_APPROVAL, order_id=order.id, order_number=order.order_number)
    return order


def update_schedule(db: Session, order_id: int, payload: OrderScheduleUpdate, actor: Actor) -> Order:
    """Creator edits date/time/address before the director has acted.

    The requested quantity is not part of the payload: volume is fixed at
    creation and only ever reconciled against invoices.
    """
    order = get_order(db, order_id)
    if order.created_by_id != actor.id:
        raise InvalidTransition(f"Only the creator may edit order {order.order_number}")
    if order.status_enum not in SCHEDULE_EDITABLE:
        raise InvalidTransition(
            f"Order {order.order_number} is {order.status}; scheduling can only be "
            f"edited while it waits for the director"
        )
    changes = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key in ("coordinates", "notes")
    }
    if changes.get("coordinates") and parse_coordinates(changes["coordinates"]) is None:
        raise ValidationFailed("Coordinates must look like 'latitude,longitude'")
    if not changes:
        return order

    expected = order.status
    # Guard the write with the status we validated against
    updated = (
        db.query(Order)
        .filter(Order.id == order.id, Order.status == expected)
        .update({**changes, "updated_at": utcnow()}, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise InvalidTransition(
            f"Order {order.order_number} was changed by someone else; reload and retry"
        )
    db.commit()
    db.refresh(order)
    return order


def list_orders(
    db: Session,
    *,
    page: int = 1,
    limit: int = 10,
    status: Optional[OrderStatus] = None,
    search: Optional[str] = None,
    created_by_id: Optional[int] = None,
    driver_id: Optional[int] = None,
) -> dict:
    """One page of orders, newest first.

    *driver_id* narrows the list to orders the driver carries an invoice for
    or opened themselves.
    """
    page = max(page, 1)
    limit = max(1, min(limit, 100))
    query = db.query(Order)
    if status is not None:
        query = query.filter(Order.status == status.value)
    if created_by_id is not None:
        query = query.filter(Order.created_by_id == created_by_id)
    if driver_id is not None:
        carried = select(Invoice.order_id).where(
            Invoice.driver_id == driver_id, Invoice.order_id.is_not(None)
        )
        query = query.filter(or_(Order.id.in_(carried), Order.created_by_id == driver_id))
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            or_(
                func.lower(Order.order_number).like(pattern),
                func.lower(Order.delivery_address).like(pattern),
            )
        )
    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "data": orders,
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit,
        },
    }


def pending_for_director(db: Session) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.status.in_(DIRECTOR_QUEUE))
        .order_by(Order.created_at.asc(), Order.id.asc())
        .all()
    )


def order_stats(db: Session) -> dict:
    rows = db.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
    by_status = [{"status": status, "count": count} for status, count in rows]
    return {"total": sum(item["count"] for item in by_status), "by_status": by_status}


def order_reconciliation(
    db: Session,
    order_id: int,
    *,
    excluding_invoice_id: Optional[int] = None,
    draft_quantity: Optional[float] = None,
) -> ReconciliationView:
    """Fresh ledger view; read on every call, never cached."""
    order = get_order(db, order_id)
    db.refresh(order)
    if draft_quantity is not None and draft_quantity < 0:
        raise ValidationFailed("Draft quantity cannot be negative")
    return reconcile_order(
        order, excluding_invoice_id=excluding_invoice_id, draft_quantity=draft_quantity
    )


__all__ = [
    "generate_order_number",
    "create_order",
    "update_schedule",
    "list_orders",
    "pending_for_director",
    "order_stats",
    "order_reconciliation",
]
