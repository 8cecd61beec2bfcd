"""Outbound notification events.

The core only emits; delivering and retrying is up to whoever subscribes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .utils import utcnow

logger = logging.getLogger(__name__)

ORDER_AWAITING_APPROVAL = "order.awaiting_approval"
ORDER_CHANGES_PROPOSED = "order.changes_proposed"
ORDER_AWAITING_DISPATCH = "order.awaiting_dispatch"
ORDER_COMPLETED = "order.completed"
INVOICE_COMPLETED = "invoice.completed"


@dataclass(frozen=True)
class Notification:
    event: str
    payload: Dict[str, Any]
    emitted_at: object = field(default_factory=utcnow)


Subscriber = Callable[[Notification], None]


def _log_subscriber(notification: Notification) -> None:
    logger.info("notification %s %s", notification.event, notification.payload)


class NotificationHub:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = [_log_subscriber]

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event: str, **payload: Any) -> Notification:
        notification = Notification(event=event, payload=payload)
        for subscriber in list(self._subscribers):
            try:
                subscriber(notification)
            except Exception:
                # A failing subscriber must not roll back a committed transition
                logger.exception("notification subscriber failed for %s", event)
        return notification


__all__ = [
    "Notification",
    "NotificationHub",
    "ORDER_AWAITING_APPROVAL",
    "ORDER_CHANGES_PROPOSED",
    "ORDER_AWAITING_DISPATCH",
    "ORDER_COMPLETED",
    "INVOICE_COMPLETED",
]
