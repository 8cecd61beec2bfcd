"""Invoice creation and reads.

Invoices are append-only: quantities and weights are fixed when the row is
written, they are never deleted, and cancelling is only possible before the
driver has started the route.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .actors import INVOICE_WRITERS, Actor, Role
from .config import Config
from .database import lock_for_update
from .errors import InvalidTransition, NotFound, QuotaExceeded, ValidationFailed
from .ledger import NON_TERMINAL_STATUSES, ReconciliationView, compute_remaining, reconcile_order
from .models import Invoice, InvoiceStatus, InvoiceType, Order, OrderStatus, Warehouse
from .notifications import NotificationHub
from .schemas import InvoiceCreate, WeighingFinalize
from .utils import next_document_number, to_naive_utc, utcnow
from .weighing import WeighingSession, corrected_weight, net_weight
from .workflow import get_order, refresh_progress

logger = logging.getLogger(__name__)

NUMBER_PREFIXES = {InvoiceType.DELIVERY.value: "EXP", InvoiceType.RECEIPT.value: "INC"}

# Orders that trucks may currently be loaded against
ORDER_OPEN_FOR_DELIVERY = frozenset(
    {OrderStatus.DISPATCHED, OrderStatus.IN_DELIVERY, OrderStatus.DELIVERED}
)

CANCELLERS = frozenset({Role.DISPATCHER, Role.DIRECTOR, Role.ADMIN})


@dataclass
class WeighingFigures:
    gross_weight_kg: Optional[float] = None
    gross_weight_at: Optional[datetime] = None
    gross_photo_ref: Optional[str] = None
    tare_weight_kg: Optional[float] = None
    tare_weight_at: Optional[datetime] = None
    tare_photo_ref: Optional[str] = None
    moisture_percent: Optional[float] = None

    @property
    def complete(self) -> bool:
        return self.gross_weight_kg is not None and self.tare_weight_kg is not None

    def derived(self) -> Tuple[Optional[float], Optional[float]]:
        """(net, corrected) keeping net = gross - tare and the moisture formula."""
        if not self.complete:
            return None, None
        net = net_weight(self.gross_weight_kg, self.tare_weight_kg)
        corrected = None
        if self.moisture_percent is not None:
            corrected = round(corrected_weight(net, self.moisture_percent), 3)
        return round(net, 3), corrected

    def effective(self) -> Optional[float]:
        net, corrected = self.derived()
        for value in (corrected, net, self.gross_weight_kg):
            if value is not None:
                return value
        return None


def generate_invoice_number(db: Session, invoice_type: str, today: Optional[date] = None) -> str:
    today = today or utcnow().date()
    prefix = NUMBER_PREFIXES[invoice_type]
    stem = f"{prefix}-{today.strftime('%Y%m%d')}"
    last = (
        db.query(Invoice.invoice_number)
        .filter(Invoice.type == invoice_type, Invoice.invoice_number.like(f"{stem}%"))
        .order_by(Invoice.invoice_number.desc())
        .first()
    )
    return next_document_number(prefix, last[0] if last else None, today)


def get_invoice(db: Session, invoice_id: int) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFound(f"Invoice {invoice_id} not found")
    return invoice


def _check_writer(actor: Actor) -> None:
    if actor.role not in INVOICE_WRITERS:
        raise InvalidTransition(f"A {actor.role.value} cannot write invoices")


def _load_order_for_delivery(db: Session, order_id: int, strict: bool) -> Order:
    query = db.query(Order).filter(Order.id == order_id)
    if strict:
        query = lock_for_update(query)
    order = query.one_or_none()
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    if order.status_enum not in ORDER_OPEN_FOR_DELIVERY:
        raise InvalidTransition(
            f"Order {order.order_number} is {order.status}; invoices can only be "
            "written once it has been dispatched"
        )
    return order


def _insert_invoice(
    db: Session,
    *,
    invoice_type: InvoiceType,
    status: InvoiceStatus,
    quantity: float,
    actor: Actor,
    figures: WeighingFigures,
    order: Optional[Order],
    warehouse_id: Optional[int],
    driver_id: Optional[int],
    vehicle_id: Optional[int],
    notes: Optional[str],
    strict: bool,
    attempts: int = 3,
) -> Invoice:
    net, corrected = figures.derived()
    last_error: Optional[IntegrityError] = None
    for _ in range(attempts):
        if order is not None and strict:
            # Reconcile inside the same transaction that holds the order row lock
            existing = db.query(Invoice).filter(Invoice.order_id == order.id).all()
            view = compute_remaining(order.quantity_m3, existing)
            if quantity > view.remaining_quantity + 1e-9:
                db.rollback()
                raise QuotaExceeded(
                    f"Order {order.order_number} has {view.remaining_quantity:.2f} m3 left; "
                    f"{quantity:.2f} m3 requested"
                )
        invoice = Invoice(
            invoice_number=generate_invoice_number(db, invoice_type.value),
            type=invoice_type.value,
            status=status.value,
            order_id=order.id if order is not None else None,
            warehouse_id=warehouse_id,
            driver_id=driver_id,
            vehicle_id=vehicle_id,
            created_by_id=actor.id,
            quantity=quantity,
            gross_weight_kg=figures.gross_weight_kg,
            gross_weight_at=figures.gross_weight_at,
            gross_photo_ref=figures.gross_photo_ref,
            tare_weight_kg=figures.tare_weight_kg,
            tare_weight_at=figures.tare_weight_at,
            tare_photo_ref=figures.tare_photo_ref,
            net_weight_kg=net,
            moisture_percent=figures.moisture_percent,
            corrected_weight_kg=corrected,
            notes=notes,
        )
        db.add(invoice)
        try:
            db.commit()
        except IntegrityError as exc:
            # Another writer took the same daily number; pick the next one
            db.rollback()
            last_error = exc
            if strict and order is not None:
                order = _load_order_for_delivery(db, order.id, strict)
            continue
        db.refresh(invoice)
        return invoice
    raise ValidationFailed("Could not allocate an invoice number, please retry") from last_error


def _after_insert(
    db: Session,
    invoice: Invoice,
    notifier: Optional[NotificationHub],
) -> Optional[ReconciliationView]:
    if invoice.order_id is None:
        return None
    refresh_progress(db, invoice.order_id, notifier)
    order = get_order(db, invoice.order_id)
    db.refresh(order)
    return reconcile_order(order)


def create_invoice(
    db: Session,
    payload: InvoiceCreate,
    actor: Actor,
    config: Config,
    notifier: Optional[NotificationHub] = None,
) -> Tuple[Invoice, Optional[ReconciliationView]]:
    """Write an invoice from figures the client already has.

    Outbound invoices count against their order's remaining volume. In the
    default permissive mode an overrun is written and flagged in the returned
    view; with STRICT_QUOTA it is refused.
    """
    _check_writer(actor)
    invoice_type = InvoiceType(payload.type)
    figures = WeighingFigures(
        gross_weight_kg=payload.gross_weight_kg,
        gross_weight_at=to_naive_utc(payload.gross_weight_at) if payload.gross_weight_at else None,
        tare_weight_kg=payload.tare_weight_kg,
        tare_weight_at=to_naive_utc(payload.tare_weight_at) if payload.tare_weight_at else None,
        moisture_percent=payload.moisture_percent,
    )
    if figures.gross_weight_kg is not None and figures.gross_weight_at is None:
        figures.gross_weight_at = utcnow()
    if figures.tare_weight_kg is not None and figures.tare_weight_at is None:
        figures.tare_weight_at = utcnow()
    if payload.moisture_percent is not None and not figures.complete:
        raise ValidationFailed("Moisture can only be applied once gross and tare are known")
    # Raises NegativeNetWeight before anything is written
    figures.derived()

    if payload.warehouse_id is not None and db.get(Warehouse, payload.warehouse_id) is None:
        raise NotFound(f"Warehouse {payload.warehouse_id} not found")

    order = None
    if invoice_type is InvoiceType.DELIVERY:
        quantity = float(payload.quantity)
        status = InvoiceStatus.PENDING
        if payload.order_id is not None:
            order = _load_order_for_delivery(db, payload.order_id, config.STRICT_QUOTA)
    else:
        quantity = payload.quantity if payload.quantity is not None else figures.effective()
        if quantity is None:
            raise ValidationFailed("Receipts need either a quantity or gross and tare weights")
        if figures.gross_weight_kg is not None and not figures.complete:
            raise ValidationFailed("Receipts need the tare weight as well as the gross weight")
        status = InvoiceStatus.DELIVERED

    driver_id = payload.driver_id
    if driver_id is None and actor.role is Role.DRIVER:
        driver_id = actor.id

    invoice = _insert_invoice(
        db,
        invoice_type=invoice_type,
        status=status,
        quantity=float(quantity),
        actor=actor,
        figures=figures,
        order=order,
        warehouse_id=payload.warehouse_id,
        driver_id=driver_id,
        vehicle_id=payload.vehicle_id,
        notes=payload.notes,
        strict=config.STRICT_QUOTA,
    )
    logger.info(
        "invoice %s written by %s#%s (%s %.2f)",
        invoice.invoice_number,
        actor.role.value,
        actor.id,
        invoice.type,
        invoice.quantity,
    )
    return invoice, _after_insert(db, invoice, notifier)


def finalize_session(
    db: Session,
    session: WeighingSession,
    payload: WeighingFinalize,
    actor: Actor,
    config: Config,
    notifier: Optional[NotificationHub] = None,
) -> Tuple[Invoice, Optional[ReconciliationView]]:
    """Turn a finished weighing into an invoice, carrying capture timestamps."""
    _check_writer(actor)
    if session.actor.id != actor.id:
        raise InvalidTransition("This weighing belongs to another operator")
    if session.capture_in_progress:
        raise InvalidTransition("Wait for the running capture to finish")
    if session.gross_weight is None or session.tare_weight is None:
        raise ValidationFailed("Both gross and tare weights must be captured first")
    # Raises NegativeNetWeight: the operator has to start over
    session.derived_net()

    figures = WeighingFigures(
        gross_weight_kg=session.gross_weight,
        gross_weight_at=session.gross_captured_at,
        gross_photo_ref=session.gross_photo_ref,
        tare_weight_kg=session.tare_weight,
        tare_weight_at=session.tare_captured_at,
        tare_photo_ref=session.tare_photo_ref,
        moisture_percent=session.moisture_percent,
    )
    invoice_type = InvoiceType(payload.type)
    order = None
    order_id = payload.order_id or session.order_ref
    if invoice_type is InvoiceType.DELIVERY:
        quantity = float(payload.quantity)
        status = InvoiceStatus.PENDING
        if order_id is not None:
            order = _load_order_for_delivery(db, order_id, config.STRICT_QUOTA)
    else:
        quantity = float(figures.effective())
        status = InvoiceStatus.DELIVERED

    driver_id = payload.driver_id
    if driver_id is None and actor.role is Role.DRIVER:
        driver_id = actor.id

    invoice = _insert_invoice(
        db,
        invoice_type=invoice_type,
        status=status,
        quantity=quantity,
        actor=actor,
        figures=figures,
        order=order,
        warehouse_id=session.warehouse_id,
        driver_id=driver_id,
        vehicle_id=payload.vehicle_id,
        notes=payload.notes,
        strict=config.STRICT_QUOTA,
    )
    logger.info(
        "weighing %s saved as invoice %s (net %.1f kg)",
        session.session_id,
        invoice.invoice_number,
        invoice.net_weight_kg or 0.0,
    )
    return invoice, _after_insert(db, invoice, notifier)


def cancel_invoice(db: Session, invoice_id: int, actor: Actor) -> Invoice:
    invoice = get_invoice(db, invoice_id)
    if actor.role not in CANCELLERS and invoice.created_by_id != actor.id:
        raise InvalidTransition(f"You may not cancel invoice {invoice.invoice_number}")
    if invoice.status != InvoiceStatus.PENDING.value or invoice.accepted_at is not None:
        raise InvalidTransition(
            f"Invoice {invoice.invoice_number} is {invoice.status}; only pending invoices "
            "whose route has not started can be canceled"
        )
    updated = (
        db.query(Invoice)
        .filter(Invoice.id == invoice.id, Invoice.status == InvoiceStatus.PENDING.value)
        .update({"status": InvoiceStatus.CANCELED.value}, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise InvalidTransition(
            f"Invoice {invoice.invoice_number} was changed by someone else; reload and retry"
        )
    db.commit()
    db.refresh(invoice)
    logger.info("invoice %s canceled by %s#%s", invoice.invoice_number, actor.role.value, actor.id)
    return invoice


def list_invoices(
    db: Session,
    *,
    invoice_type: Optional[InvoiceType] = None,
    status: Optional[InvoiceStatus] = None,
    order_id: Optional[int] = None,
    driver_id: Optional[int] = None,
    limit: int = 50,
) -> List[Invoice]:
    query = db.query(Invoice)
    if invoice_type is not None:
        query = query.filter(Invoice.type == invoice_type.value)
    if status is not None:
        query = query.filter(Invoice.status == status.value)
    if order_id is not None:
        query = query.filter(Invoice.order_id == order_id)
    if driver_id is not None:
        query = query.filter(Invoice.driver_id == driver_id)
    return query.order_by(Invoice.id.desc()).limit(max(1, min(limit, 200))).all()


def active_invoices_for_driver(db: Session, driver_id: int) -> List[Invoice]:
    return (
        db.query(Invoice)
        .filter(Invoice.driver_id == driver_id, Invoice.status.in_(NON_TERMINAL_STATUSES))
        .order_by(Invoice.created_at.asc(), Invoice.id.asc())
        .all()
    )



def invoice_stats(db: Session) -> dict:
    total = db.query(func.count(Invoice.id)).scalar() or 0
    by_type = db.query(Invoice.type, func.count(Invoice.id)).group_by(Invoice.type).all()
    by_status = db.query(Invoice.status, func.count(Invoice.id)).group_by(Invoice.status).all()
    return {
        "total": total,
        "by_type": [{"type": kind, "count": count} for kind, count in by_type],
        "by_status": [{"status": status, "count": count} for status, count in by_status],
    }

__all__ = [
    "WeighingFigures",
    "generate_invoice_number",
    "get_invoice",
    "create_invoice",
    "finalize_session",
    "cancel_invoice",
    "list_invoices",
    "active_invoices_for_driver",
    "invoice_stats",
]
