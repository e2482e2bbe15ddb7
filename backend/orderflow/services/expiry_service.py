# Overview: Service-layer operations for expiring unpaid gateway payments.

"""
Expiry Sweeper

WHY: A hosted-payment token is only valid for a fixed window. Orders whose
token outlived that window without settling are cancelled with
payment_status=EXPIRED so they stop showing up as payable.

DESIGN:
- Triggered externally (CLI or cron endpoint); keeps no state between runs.
- Each order is expired in its own unit of work. A failure on one order is
  logged and reported, and the sweep moves on to the next.
- Candidates are re-checked under the row lock before mutating, so an order
  settled by a racing request is left alone.
- Stock is never touched: an unpaid order never decremented it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from ..extensions import db
from ..models import Order, Payment
from orderflow.time_utils import utcnow
from .concurrency import atomic
from .errors import OrderFlowError
from .gateway_client import GATEWAY_NAME
from .notification_service import ORDER_STATUS_CHANGED, safe_emit
from .order_service import (
    PAYMENT_STATUS_EXPIRED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_PROCESSING,
    STATUS_CANCELLED,
    STATUS_PENDING_PAYMENT,
    get_order_for_update,
    status_event_payload,
    transition_order,
)

logger = logging.getLogger(__name__)

EXPIRY_REASON_TEMPLATE = "Payment expired - exceeded {minutes} minute time limit"
OPEN_PAYMENT_STATUSES = (PAYMENT_STATUS_PENDING, PAYMENT_STATUS_PROCESSING)


def expiry_reason(ttl_minutes: int) -> str:
    return EXPIRY_REASON_TEMPLATE.format(minutes=ttl_minutes)


def token_expires_at(order: Order, ttl_minutes: int):
    if order.payment_token_issued_at is None:
        return None
    return order.payment_token_issued_at + timedelta(minutes=ttl_minutes)


def is_token_expired(order: Order, ttl_minutes: int, now=None) -> bool:
    """A token is expired once its age reaches the window (age >= ttl)."""
    if not order.payment_token or order.payment_token_issued_at is None:
        return True
    now = now or utcnow()
    return now >= token_expires_at(order, ttl_minutes)


def mark_order_expired(order: Order, *, now, reason: str) -> str:
    """
    Cancel a locked, unpaid order as EXPIRED and close its payment attempt.

    Open attempts become EXPIRED; when the order has none, a single EXPIRED
    row is written for the current gateway order id. Repeated calls never add
    a second row for the same attempt. Returns the previous order status.
    """
    old_status = order.status
    transition_order(order, STATUS_CANCELLED, reason=reason, now=now)
    order.payment_status = PAYMENT_STATUS_EXPIRED

    open_attempts = (
        db.session.query(Payment)
        .filter(Payment.order_id == order.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
        .all()
    )
    for attempt in open_attempts:
        attempt.status = PAYMENT_STATUS_EXPIRED
        attempt.expired_at = now

    if not open_attempts:
        reference = order.gateway_order_id or order.order_number
        already_recorded = (
            db.session.query(Payment.id)
            .filter(
                Payment.order_id == order.id,
                Payment.status == PAYMENT_STATUS_EXPIRED,
                Payment.reference_number == reference,
            )
            .first()
        )
        if already_recorded is None:
            db.session.add(Payment(
                order_id=order.id,
                payment_method=order.payment_method or "OTHER",
                amount_cents=order.total_cents,
                status=PAYMENT_STATUS_EXPIRED,
                gateway_name=GATEWAY_NAME,
                reference_number=reference,
                expired_at=now,
            ))
    return old_status


@dataclass
class SweepResult:
    checked: int = 0
    expired: list[str] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "expired_count": len(self.expired),
            "expired": list(self.expired),
            "failed": list(self.failed),
        }


class ExpirySweeper:
    """Cancels PENDING_PAYMENT orders whose payment token outlived its window."""

    def __init__(self, notifier=None, *, ttl_minutes: int = 10):
        self.notifier = notifier
        self.ttl_minutes = ttl_minutes

    def _is_candidate(self, order: Order, now) -> bool:
        return (
            order.deleted_at is None
            and order.status == STATUS_PENDING_PAYMENT
            and order.payment_status in OPEN_PAYMENT_STATUSES
            and bool(order.payment_token)
            and is_token_expired(order, self.ttl_minutes, now)
        )

    def find_candidates(self, now) -> list[int]:
        cutoff = now - timedelta(minutes=self.ttl_minutes)
        rows = (
            db.session.query(Order.id)
            .filter(
                Order.deleted_at.is_(None),
                Order.status == STATUS_PENDING_PAYMENT,
                Order.payment_status.in_(OPEN_PAYMENT_STATUSES),
                Order.payment_token.isnot(None),
                Order.payment_token_issued_at <= cutoff,
            )
            .order_by(Order.id.asc())
            .all()
        )
        return [row.id for row in rows]

    def run(self, now=None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()
        candidates = self.find_candidates(now)
        result.checked = len(candidates)
        reason = expiry_reason(self.ttl_minutes)

        for order_id in candidates:
            def _op(order_id=order_id):
                order = get_order_for_update(order_id)
                if not self._is_candidate(order, now):
                    return None
                old_status = mark_order_expired(order, now=now, reason=reason)
                return order, old_status

            try:
                outcome = atomic(_op)
            except OrderFlowError as exc:
                logger.warning("Could not expire order %s: %s", order_id, exc.message)
                result.failed.append({"order_id": order_id, "error": exc.code})
                continue
            except Exception as exc:
                logger.exception("Unexpected failure expiring order %s", order_id)
                result.failed.append({"order_id": order_id, "error": exc.__class__.__name__})
                continue

            if outcome is None:
                continue
            order, old_status = outcome
            result.expired.append(order.order_number)
            logger.info("Order %s payment expired", order.order_number)
            safe_emit(self.notifier, ORDER_STATUS_CHANGED, status_event_payload(order, old_status))

        if result.expired or result.failed:
            logger.info(
                "Expiry sweep finished: checked=%s expired=%s failed=%s",
                result.checked, len(result.expired), len(result.failed),
            )
        return result
