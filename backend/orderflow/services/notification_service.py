"""
Notification port for downstream observers (sockets, event bus, audit feeds).

WHY: State transitions are announced fire-and-forget. The port is passed into
each service at construction time; nothing reaches for a process-global
emitter. Delivery failures are logged and never affect the caller.

EVENTS:
- order:created
- order:status_changed
- payment:confirmed
- inventory:low_stock / inventory:out_of_stock / inventory:oversold
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ORDER_CREATED = "order:created"
ORDER_STATUS_CHANGED = "order:status_changed"
PAYMENT_CONFIRMED = "payment:confirmed"
INVENTORY_LOW_STOCK = "inventory:low_stock"
INVENTORY_OUT_OF_STOCK = "inventory:out_of_stock"
INVENTORY_OVERSOLD = "inventory:oversold"


class NotificationPort(Protocol):
    def emit(self, event: str, payload: dict[str, Any]) -> None:
        ...


class NullNotifier:
    """Drops every event."""

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        return None


class LoggingNotifier:
    """Writes every event to the log; the default when no fan-out is wired."""

    def __init__(self, logger_name: str = "orderflow.events"):
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self._logger.info("event=%s payload=%s", event, payload)


def safe_emit(notifier: NotificationPort | None, event: str, payload: dict[str, Any]) -> None:
    """Emit an event, swallowing and logging any delivery failure."""
    if notifier is None:
        return
    try:
        notifier.emit(event, payload)
    except Exception:
        logger.exception("Failed to emit %s notification", event)
