"""
Order approval workflow.

STATE MACHINE:
    DRAFT -> PENDING_DIRECTOR
    PENDING_DIRECTOR -> APPROVED_BY_DIRECTOR -> PENDING_DISPATCHER   (approve, auto-advance)
    PENDING_DIRECTOR -> WAITING_CREATOR_APPROVAL                      (propose_changes)
    PENDING_DIRECTOR | PENDING_DISPATCHER -> REJECTED                 (reject)
    WAITING_CREATOR_APPROVAL -> PENDING_DISPATCHER                    (accept_changes)
    WAITING_CREATOR_APPROVAL -> CANCELED                              (reject_changes)
    PENDING_DISPATCHER -> DISPATCHED                                  (dispatch)
    DISPATCHED -> IN_DELIVERY -> DELIVERED -> COMPLETED               (invoice driven)

RULES:
1. Every status write is a compare-and-swap on (id, expected status). If
   another actor moved the order first, the write affects no rows and the
   caller gets InvalidTransition instead of overwriting their work.
2. Wrong role or wrong status is InvalidTransition, never a validation error.
3. A director's proposal may only move the date and time.
4. Orders are never deleted; REJECTED and CANCELED retire them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from .actors import Actor, Role
from .errors import ChangeProposalViolation, InvalidTransition, NotFound, ValidationFailed
from .ledger import ReconciliationView, reconcile_order
from .models import Order, OrderStatus
from .notifications import (
    ORDER_AWAITING_APPROVAL,
    ORDER_AWAITING_DISPATCH,
    ORDER_CHANGES_PROPOSED,
    ORDER_COMPLETED,
    NotificationHub,
)
from .utils import utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.REJECTED, OrderStatus.CANCELED})

# Invoice-driven statuses, in the only order they may be reached
DELIVERY_PROGRESSION: List[OrderStatus] = [
    OrderStatus.DISPATCHED,
    OrderStatus.IN_DELIVERY,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
]

# Statuses in which the creator may still move scheduling fields
SCHEDULE_EDITABLE = frozenset({OrderStatus.DRAFT, OrderStatus.PENDING_DIRECTOR})


@dataclass(frozen=True)
class Transition:
    action: str
    sources: FrozenSet[OrderStatus]
    target: OrderStatus
    roles: FrozenSet[Role] = frozenset()
    creator_only: bool = False
    # Applied immediately after target inside the same transaction
    then: Optional[OrderStatus] = None

    def permits(self, order: Order, actor: Actor) -> bool:
        if self.creator_only and order.created_by_id != actor.id:
            return False
        if self.roles and actor.role not in self.roles:
            return False
        return True


TRANSITIONS: Dict[str, Transition] = {
    t.action: t
    for t in (
        Transition(
            "submit",
            frozenset({OrderStatus.DRAFT}),
            OrderStatus.PENDING_DIRECTOR,
            creator_only=True,
        ),
        Transition(
            "approve",
            frozenset({OrderStatus.PENDING_DIRECTOR}),
            OrderStatus.APPROVED_BY_DIRECTOR,
            roles=frozenset({Role.DIRECTOR}),
            then=OrderStatus.PENDING_DISPATCHER,
        ),
        Transition(
            "reject",
            frozenset({OrderStatus.PENDING_DIRECTOR, OrderStatus.PENDING_DISPATCHER}),
            OrderStatus.REJECTED,
            roles=frozenset({Role.DIRECTOR}),
        ),
        Transition(
            "propose_changes",
            frozenset({OrderStatus.PENDING_DIRECTOR}),
            OrderStatus.WAITING_CREATOR_APPROVAL,
            roles=frozenset({Role.DIRECTOR}),
        ),
        Transition(
            "accept_changes",
            frozenset({OrderStatus.WAITING_CREATOR_APPROVAL}),
            OrderStatus.PENDING_DISPATCHER,
            creator_only=True,
        ),
        Transition(
            "reject_changes",
            frozenset({OrderStatus.WAITING_CREATOR_APPROVAL}),
            OrderStatus.CANCELED,
            creator_only=True,
        ),
        Transition(
            "dispatch",
            frozenset({OrderStatus.PENDING_DISPATCHER}),
            OrderStatus.DISPATCHED,
            roles=frozenset({Role.DISPATCHER}),
        ),
    )
}


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


def allowed_actions(order: Order, actor: Optional[Actor] = None) -> List[str]:
    """Actions legal from the order's current status (for *actor*, if given)."""
    status = order.status_enum
    actions = []
    for action, transition in TRANSITIONS.items():
        if status not in transition.sources:
            continue
        if actor is not None and not transition.permits(order, actor):
            continue
        actions.append(action)
    return actions


def _check_transition(transition: Transition, order: Order, actor: Actor) -> OrderStatus:
    """Return the order's status if *actor* may run *transition* from it."""
    current = order.status_enum
    verb = transition.action.replace("_", " ")
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(
            f"Order {order.order_number} is closed ({current.value}); cannot {verb} it"
        )
    if current not in transition.sources:
        raise InvalidTransition(
            f"Cannot {verb} order {order.order_number} while it is {current.value}"
        )
    if not transition.permits(order, actor):
        who = "the order's creator" if transition.creator_only else "a " + " or ".join(
            sorted(role.value for role in transition.roles)
        )
        raise InvalidTransition(f"Only {who} may {verb} order {order.order_number}")
    return current


def _compare_and_swap(
    db: Session,
    order_id: int,
    expected: OrderStatus,
    target: OrderStatus,
    **changes,
) -> bool:
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == expected.value)
        .values(status=target.value, updated_at=utcnow(), **changes)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def perform(
    db: Session,
    order_id: int,
    action: str,
    actor: Actor,
    *,
    changes: Optional[dict] = None,
    notifier: Optional[NotificationHub] = None,
) -> Order:
    """Run *action* on the order as *actor* and commit.

    Raises InvalidTransition when the action is unknown, illegal from the
    current status, not allowed for the actor, or lost a race.
    """
    transition = TRANSITIONS.get(action)
    if transition is None:
        raise InvalidTransition(f"Unknown order action '{action}'")

    order = get_order(db, order_id)
    current = _check_transition(transition, order, actor)

    if not _compare_and_swap(db, order.id, current, transition.target, **(changes or {})):
        db.rollback()
        raise InvalidTransition(
            f"Order {order.order_number} was changed by someone else; reload and retry"
        )
    if transition.then is not None and not _compare_and_swap(
        db, order.id, transition.target, transition.then
    ):
        db.rollback()
        raise InvalidTransition(
            f"Order {order.order_number} was changed by someone else; reload and retry"
        )
    db.commit()
    db.refresh(order)

    logger.info(
        "order %s: %s by %s#%s, %s -> %s",
        order.order_number,
        action,
        actor.role.value,
        actor.id,
        current.value,
        order.status,
    )
    if notifier is not None:
        _notify(notifier, action, order)
    return order


def _notify(notifier: NotificationHub, action: str, order: Order) -> None:
    if action == "submit":
        notifier.emit(ORDER_AWAITING_APPROVAL, order_id=order.id, order_number=order.order_number)
    elif action == "propose_changes":
        notifier.emit(
            ORDER_CHANGES_PROPOSED,
            order_id=order.id,
            order_number=order.order_number,
            recipient_id=order.created_by_id,
            reason=order.change_reason,
        )
    elif action in ("approve", "accept_changes"):
        notifier.emit(ORDER_AWAITING_DISPATCH, order_id=order.id, order_number=order.order_number)


def submit_order(db: Session, order_id: int, actor: Actor, notifier=None) -> Order:
    return perform(db, order_id, "submit", actor, notifier=notifier)


def approve_order(db: Session, order_id: int, actor: Actor, notifier=None) -> Order:
    return perform(db, order_id, "approve", actor, changes={"approved_by_id": actor.id}, notifier=notifier)


def reject_order(db: Session, order_id: int, actor: Actor, notifier=None) -> Order:
    return perform(db, order_id, "reject", actor, changes={"approved_by_id": actor.id}, notifier=notifier)


def dispatch_order(db: Session, order_id: int, actor: Actor, notifier=None) -> Order:
    return perform(
        db, order_id, "dispatch", actor, changes={"dispatched_by_id": actor.id}, notifier=notifier
    )


def propose_changes(
    db: Session,
    order_id: int,
    actor: Actor,
    *,
    delivery_date: date,
    delivery_time: str,
    reason: str,
    delivery_address: Optional[str] = None,
    coordinates: Optional[str] = None,
    notifier: Optional[NotificationHub] = None,
) -> Order:
    """Director counter-proposes a new date and time.

    The delivery address and coordinates are not negotiable: a proposal that
    would change them is refused outright, whatever the client shows.
    """
    order = get_order(db, order_id)
    # Wrong state or role is reported before anything about the payload
    _check_transition(TRANSITIONS["propose_changes"], order, actor)
    if delivery_address is not None and delivery_address.strip() != (order.delivery_address or "").strip():
        raise ChangeProposalViolation(
            "A proposal may change only the delivery date and time, not the delivery address"
        )
    if coordinates is not None and coordinates.strip() != (order.coordinates or "").strip():
        raise ChangeProposalViolation(
            "A proposal may change only the delivery date and time, not the coordinates"
        )
    if not reason or not reason.strip():
        raise ValidationFailed("A reason is required when proposing changes")
    if not delivery_time or not delivery_time.strip():
        raise ValidationFailed("A delivery time is required when proposing changes")

    return perform(
        db,
        order_id,
        "propose_changes",
        actor,
        changes={
            "proposed_delivery_date": delivery_date,
            "proposed_delivery_time": delivery_time.strip(),
            "change_reason": reason.strip(),
            "approved_by_id": actor.id,
        },
        notifier=notifier,
    )


def accept_changes(db: Session, order_id: int, actor: Actor, notifier=None) -> Order:
    order = get_order(db, order_id)
    changes = {
        "proposed_delivery_date": None,
        "proposed_delivery_time": None,
        "change_reason": None,
    }
    # Only apply a proposal that actually exists
    if order.proposed_delivery_date is not None:
        changes["delivery_date"] = order.proposed_delivery_date
    if order.proposed_delivery_time:
        changes["delivery_time"] = order.proposed_delivery_time
    return perform(db, order_id, "accept_changes", actor, changes=changes, notifier=notifier)


def reject_changes(db: Session, order_id: int, actor: Actor, notifier=None) -> Order:
    """Creator turns the proposal down, which cancels the order outright."""
    return perform(
        db,
        order_id,
        "reject_changes",
        actor,
        changes={
            "proposed_delivery_date": None,
            "proposed_delivery_time": None,
            "change_reason": None,
        },
        notifier=notifier,
    )


def delete_order(db: Session, order_id: int, actor: Actor) -> None:
    order = get_order(db, order_id)
    raise InvalidTransition(
        f"Order {order.order_number} cannot be deleted; orders are kept as history. "
        "Reject or cancel it instead."
    )


def _progress_target(order: Order, view: ReconciliationView) -> Optional[OrderStatus]:
    if view.initial_quantity > 0 and view.delivered_quantity >= view.initial_quantity:
        return OrderStatus.COMPLETED
    if view.remaining_quantity <= 0 and view.in_progress_quantity > 0:
        return OrderStatus.DELIVERED
    if view.in_progress_quantity > 0 or view.delivered_quantity > 0:
        return OrderStatus.IN_DELIVERY
    return None


def refresh_progress(
    db: Session,
    order_id: int,
    notifier: Optional[NotificationHub] = None,
    *,
    attempts: int = 3,
) -> Order:
    """Move a dispatched order forward according to its invoices.

    Only ever moves forward along DELIVERY_PROGRESSION. A concurrent rollup
    that got there first is fine; the loop re-reads and stops.
    """
    for _ in range(attempts):
        order = get_order(db, order_id)
        db.refresh(order)
        current = order.status_enum
        if current not in DELIVERY_PROGRESSION or current is OrderStatus.COMPLETED:
            return order
        view = reconcile_order(order)
        target = _progress_target(order, view)
        if target is None or DELIVERY_PROGRESSION.index(target) <= DELIVERY_PROGRESSION.index(current):
            return order
        if _compare_and_swap(db, order.id, current, target):
            db.commit()
            db.refresh(order)
            logger.info("order %s: %s -> %s from invoices", order.order_number, current.value, target.value)
            if target is OrderStatus.COMPLETED and notifier is not None:
                notifier.emit(
                    ORDER_COMPLETED,
                    order_id=order.id,
                    order_number=order.order_number,
                    delivered_quantity=view.delivered_quantity,
                    quota_exceeded=view.quota_exceeded,
                )
            return order
        db.rollback()
    return get_order(db, order_id)


__all__ = [
    "TERMINAL_STATUSES",
    "DELIVERY_PROGRESSION",
    "SCHEDULE_EDITABLE",
    "Transition",
    "TRANSITIONS",
    "get_order",
    "allowed_actions",
    "perform",
    "submit_order",
    "approve_order",
    "reject_order",
    "dispatch_order",
    "propose_changes",
    "accept_changes",
    "reject_changes",
    "delete_order",
    "refresh_progress",
]
