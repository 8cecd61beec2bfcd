"""Driver checkpoints on a delivery invoice.

accepted -> arrived_at_site -> departed_from_site -> arrived_at_plant
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .actors import Actor, Role
from .config import Config
from .errors import InvalidTransition, ValidationFailed
from .invoices import get_invoice
from .models import Invoice, InvoiceStatus, InvoiceType
from .notifications import INVOICE_COMPLETED, NotificationHub
from .utils import haversine_km, to_naive_utc, utcnow
from .workflow import refresh_progress

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    name: str
    column: str
    status: InvoiceStatus

    @property
    def latitude_column(self) -> str:
        return self.column.replace("_at", "_latitude")

    @property
    def longitude_column(self) -> str:
        return self.column.replace("_at", "_longitude")


CHECKPOINTS: List[Checkpoint] = [
    Checkpoint("accepted", "accepted_at", InvoiceStatus.IN_TRANSIT),
    Checkpoint("arrived_at_site", "arrived_site_at", InvoiceStatus.ARRIVED),
    Checkpoint("departed_from_site", "departed_site_at", InvoiceStatus.DEPARTED),
    Checkpoint("arrived_at_plant", "arrived_plant_at", InvoiceStatus.COMPLETED),
]
CHECKPOINTS_BY_NAME: Dict[str, Checkpoint] = {checkpoint.name: checkpoint for checkpoint in CHECKPOINTS}


def route_progress(invoice: Invoice) -> Dict[str, Optional[datetime]]:
    return {checkpoint.name: getattr(invoice, checkpoint.column) for checkpoint in CHECKPOINTS}


def _site_distance(invoice: Invoice, latitude: float, longitude: float, factor: float) -> Optional[float]:
    warehouse = invoice.warehouse
    if warehouse is None or warehouse.latitude is None or warehouse.longitude is None:
        return None
    straight = haversine_km(warehouse.latitude, warehouse.longitude, latitude, longitude)
    return round(straight * factor, 2)


def record_checkpoint(
    db: Session,
    invoice_id: int,
    name: str,
    actor: Actor,
    *,
    at: Optional[datetime] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    config: Optional[Config] = None,
    notifier: Optional[NotificationHub] = None,
) -> Invoice:
    """Record checkpoint *name* for the invoice's assigned driver.

    Re-sending a recorded checkpoint with the same timestamp changes nothing.
    Any other attempt to touch a recorded checkpoint, or to skip ahead or go
    back, is an InvalidTransition.
    """
    checkpoint = CHECKPOINTS_BY_NAME.get(name)
    if checkpoint is None:
        raise ValidationFailed(f"Unknown route checkpoint '{name}'")
    if (latitude is None) != (longitude is None):
        raise ValidationFailed("Latitude and longitude must be sent together")

    invoice = get_invoice(db, invoice_id)
    if actor.role is not Role.DRIVER or invoice.driver_id != actor.id:
        raise InvalidTransition(
            f"Only the driver assigned to invoice {invoice.invoice_number} may report its route"
        )
    if invoice.type != InvoiceType.DELIVERY.value:
        raise InvalidTransition(f"Invoice {invoice.invoice_number} is not a delivery")

    timestamp = to_naive_utc(at) if at is not None else None
    recorded = getattr(invoice, checkpoint.column)
    if recorded is not None:
        if timestamp is not None and recorded == timestamp:
            return invoice
        raise InvalidTransition(
            f"{checkpoint.name.replace('_', ' ')} is already recorded for invoice "
            f"{invoice.invoice_number}"
        )

    index = CHECKPOINTS.index(checkpoint)
    later = [c for c in CHECKPOINTS[index + 1 :] if getattr(invoice, c.column) is not None]
    if later:
        raise InvalidTransition(
            f"Cannot record {checkpoint.name.replace('_', ' ')} after "
            f"{later[-1].name.replace('_', ' ')} on invoice {invoice.invoice_number}"
        )
    if invoice.status == InvoiceStatus.CANCELED.value:
        raise InvalidTransition(f"Invoice {invoice.invoice_number} is canceled")
    if index > 0:
        previous = CHECKPOINTS[index - 1]
        previous_at = getattr(invoice, previous.column)
        if previous_at is None:
            raise InvalidTransition(
                f"Record {previous.name.replace('_', ' ')} before "
                f"{checkpoint.name.replace('_', ' ')}"
            )

    timestamp = timestamp or utcnow()
    if index > 0 and timestamp < getattr(invoice, CHECKPOINTS[index - 1].column):
        raise ValidationFailed("Checkpoint time cannot be earlier than the previous checkpoint")

    expected_status = invoice.status
    values = {checkpoint.column: timestamp, "status": checkpoint.status.value}
    if latitude is not None:
        values[checkpoint.latitude_column] = latitude
        values[checkpoint.longitude_column] = longitude
        if checkpoint.name == "arrived_at_site":
            factor = config.ROAD_DISTANCE_FACTOR if config is not None else 1.2
            distance = _site_distance(invoice, latitude, longitude, factor)
            if distance is not None:
                values["distance_km"] = distance

    column = getattr(Invoice, checkpoint.column)
    updated = (
        db.query(Invoice)
        .filter(Invoice.id == invoice.id, Invoice.status == expected_status, column.is_(None))
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise InvalidTransition(
            f"Invoice {invoice.invoice_number} was changed meanwhile; reload and retry"
        )
    db.commit()
    db.refresh(invoice)
    logger.info(
        "invoice %s: %s at %s by driver %s",
        invoice.invoice_number,
        checkpoint.name,
        timestamp.isoformat(),
        actor.id,
    )

    if checkpoint.status is InvoiceStatus.COMPLETED and notifier is not None:
        notifier.emit(
            INVOICE_COMPLETED,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            order_id=invoice.order_id,
            quantity=invoice.quantity,
        )
    if invoice.order_id is not None:
        refresh_progress(db, invoice.order_id, notifier)
        db.refresh(invoice)
    return invoice


__all__ = ["Checkpoint", "CHECKPOINTS", "route_progress", "record_checkpoint"]
