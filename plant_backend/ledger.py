"""Order reconciliation: how much of an order's volume is still available.

The view is always recomputed from the current invoice set. There is no
stored running total, so concurrent invoice writers can never leave it stale.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Optional

from .models import Invoice, InvoiceStatus, Order

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = frozenset(
    {
        InvoiceStatus.PENDING.value,
        InvoiceStatus.IN_TRANSIT.value,
        InvoiceStatus.ARRIVED.value,
        InvoiceStatus.DEPARTED.value,
    }
)
TERMINAL_SUCCESS_STATUSES = frozenset(
    {InvoiceStatus.DELIVERED.value, InvoiceStatus.COMPLETED.value}
)


@dataclass(frozen=True)
class ReconciliationView:
    initial_quantity: float
    in_progress_quantity: float
    delivered_quantity: float
    remaining_quantity: float
    quota_exceeded: bool
    draft_quantity: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _status_of(invoice) -> str:
    status = invoice.status
    return status.value if isinstance(status, InvoiceStatus) else str(status)


def compute_remaining(
    initial_quantity: float,
    invoices: Iterable[Invoice],
    excluding_invoice_id: Optional[int] = None,
    draft_quantity: Optional[float] = None,
) -> ReconciliationView:
    """Reconcile *initial_quantity* against *invoices*.

    ``excluding_invoice_id`` leaves one invoice out (used while that invoice is
    being edited). ``draft_quantity`` is what an operator is typing right now;
    it counts as in progress for display only and is never persisted.
    """
    in_progress = 0.0
    delivered = 0.0
    for invoice in invoices:
        if excluding_invoice_id is not None and invoice.id == excluding_invoice_id:
            continue
        status = _status_of(invoice)
        quantity = float(invoice.quantity or 0.0)
        if status in NON_TERMINAL_STATUSES:
            in_progress += quantity
        elif status in TERMINAL_SUCCESS_STATUSES:
            delivered += quantity

    draft = max(float(draft_quantity or 0.0), 0.0)
    in_progress += draft

    initial = float(initial_quantity or 0.0)
    return ReconciliationView(
        initial_quantity=initial,
        in_progress_quantity=round(in_progress, 6),
        delivered_quantity=round(delivered, 6),
        remaining_quantity=round(max(0.0, initial - in_progress - delivered), 6),
        quota_exceeded=delivered + in_progress > initial + 1e-9,
        draft_quantity=draft,
    )


def reconcile_order(
    order: Order,
    excluding_invoice_id: Optional[int] = None,
    draft_quantity: Optional[float] = None,
) -> ReconciliationView:
    """Reconciliation view for *order* over its currently loaded invoices."""
    view = compute_remaining(
        order.quantity_m3,
        order.invoices,
        excluding_invoice_id=excluding_invoice_id,
        draft_quantity=draft_quantity,
    )
    if view.quota_exceeded and not view.draft_quantity:
        logger.warning(
            "order %s over quota: delivered %.2f + in progress %.2f > %.2f",
            order.order_number,
            view.delivered_quantity,
            view.in_progress_quantity,
            view.initial_quantity,
        )
    return view


__all__ = [
    "NON_TERMINAL_STATUSES",
    "TERMINAL_SUCCESS_STATUSES",
    "ReconciliationView",
    "compute_remaining",
    "reconcile_order",
]
