# Overview: Service-layer operations for payment settlement; shared by the cash and gateway paths.

"""
Payment Settlement

WHY: Cash confirmation and gateway settlement must produce identical state:
order PAID/COMPLETED, exactly one COMPLETED Payment row, and one OUT ledger
row per tracked item. settle_order() is that single path; both callers run it
inside one unit of work with the order row locked.

SINGLE SETTLEMENT:
- checked here against stored rows (precondition)
- enforced again by the partial unique index on payments(order_id)
  WHERE status='COMPLETED'
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Order, Payment
from orderflow.time_utils import utcnow
from .concurrency import atomic
from .errors import (
    InsufficientPayment,
    OrderAlreadySettled,
    OrderNotSettleable,
    ValidationFailed,
)
from .inventory_service import decrement_for_order, emit_stock_alerts
from .notification_service import PAYMENT_CONFIRMED, safe_emit
from .order_service import (
    PAYMENT_METHODS,
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_PROCESSING,
    STATUS_AWAITING_CONFIRMATION,
    STATUS_PAID,
    STATUS_PENDING_PAYMENT,
    STOCK_DECREMENTED_STATUSES,
    get_order_for_update,
    transition_order,
)

logger = logging.getLogger(__name__)

TRANSACTION_PAYMENT = "PAYMENT"
TRANSACTION_REFUND = "REFUND"
TRANSACTION_PARTIAL_REFUND = "PARTIAL_REFUND"

DEFAULT_CASH_METHOD = "CASH"


def completed_payment_count(order_id: int) -> int:
    return (
        db.session.query(Payment)
        .filter(Payment.order_id == order_id, Payment.status == PAYMENT_STATUS_COMPLETED)
        .count()
    )


def ensure_settleable(order: Order) -> None:
    """Raise unless the order may still be settled."""
    if order.status in STOCK_DECREMENTED_STATUSES:
        raise OrderAlreadySettled(
            "Order is already paid",
            details={"order_id": order.id, "current_status": order.status},
        )
    if order.status not in (STATUS_PENDING_PAYMENT, STATUS_AWAITING_CONFIRMATION):
        raise OrderNotSettleable(
            f"Cannot settle a {order.status} order",
            details={"order_id": order.id, "current_status": order.status},
        )
    if completed_payment_count(order.id) > 0:
        raise OrderAlreadySettled(
            "Order already has a completed payment",
            details={"order_id": order.id, "current_status": order.status},
        )


def supersede_pending_attempts(order: Order, now, *, keep: Payment | None = None) -> int:
    """Mark still-open gateway attempts FAILED; returns how many were closed."""
    pending = (
        db.session.query(Payment)
        .filter(
            Payment.order_id == order.id,
            Payment.status.in_((PAYMENT_STATUS_PENDING, PAYMENT_STATUS_PROCESSING)),
        )
        .all()
    )
    closed = 0
    for attempt in pending:
        if keep is not None and attempt.id == keep.id:
            continue
        attempt.status = PAYMENT_STATUS_FAILED
        attempt.failed_at = now
        closed += 1
    return closed


def settle_order(
    order: Order,
    *,
    payment: Payment,
    paid_at,
    paid_cents: int,
    change_cents: int,
    payment_method: str,
    allow_oversell: bool,
    user_id: int | None = None,
) -> list:
    """
    Move a locked order to PAID and decrement its stock.

    `payment` is the attempt being completed (new cash row or existing gateway
    attempt); it becomes the order's single COMPLETED payment. Returns stock
    alerts to emit after commit.
    """
    ensure_settleable(order)
    now = utcnow()

    transition_order(order, STATUS_PAID, settlement=True, now=paid_at, user_id=user_id)
    order.payment_status = PAYMENT_STATUS_COMPLETED
    order.paid_cents = paid_cents
    order.change_cents = change_cents
    order.payment_method = payment_method

    if payment.id is None:
        db.session.add(payment)
        db.session.flush()
    supersede_pending_attempts(order, now, keep=payment)
    payment.status = PAYMENT_STATUS_COMPLETED
    payment.paid_at = paid_at

    return decrement_for_order(order, allow_oversell=allow_oversell, user_id=user_id)


def confirmation_payload(order: Order, payment: Payment) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "payment_id": payment.id,
        "payment_method": payment.payment_method,
        "amount_cents": payment.amount_cents,
        "paid_cents": order.paid_cents,
        "change_cents": order.change_cents,
    }


class PaymentService:
    """Cash-path confirmation and payment lookups."""

    def __init__(self, notifier=None):
        self.notifier = notifier

    def confirm_payment(
        self,
        order_id: int,
        paid_cents,
        *,
        change_cents=None,
        payment_method: str | None = None,
        user_id: int | None = None,
        notes: str | None = None,
    ) -> tuple[Order, Payment]:
        """
        Confirm a cashier-verified payment.

        In one unit of work: order -> PAID/COMPLETED, one COMPLETED Payment row,
        and an OUT ledger row per tracked item. Any stock shortfall rolls back
        all of it.
        """
        if isinstance(paid_cents, bool) or not isinstance(paid_cents, int) or paid_cents < 0:
            raise ValidationFailed("paid_cents must be a non-negative integer", details={"paid_cents": paid_cents})
        if change_cents is not None and (
            isinstance(change_cents, bool) or not isinstance(change_cents, int) or change_cents < 0
        ):
            raise ValidationFailed("change_cents must be a non-negative integer", details={"change_cents": change_cents})
        method = payment_method or DEFAULT_CASH_METHOD
        if method not in PAYMENT_METHODS:
            raise ValidationFailed("Invalid payment_method", details={"allowed": list(PAYMENT_METHODS)})

        def _op():
            order = get_order_for_update(order_id)
            ensure_settleable(order)

            if paid_cents < order.total_cents:
                raise InsufficientPayment(
                    "Paid amount is less than order total",
                    details={
                        "order_id": order.id,
                        "total_cents": order.total_cents,
                        "paid_cents": paid_cents,
                        "shortage_cents": order.total_cents - paid_cents,
                    },
                )

            now = utcnow()
            change = paid_cents - order.total_cents if change_cents is None else change_cents
            payment = Payment(
                order_id=order.id,
                payment_method=method,
                amount_cents=order.total_cents,
                status=PAYMENT_STATUS_PENDING,
                transaction_type=TRANSACTION_PAYMENT,
                reference_number=order.order_number,
                verified_by_user_id=user_id,
                verified_at=now,
                verification_notes=notes,
            )
            alerts = settle_order(
                order,
                payment=payment,
                paid_at=now,
                paid_cents=paid_cents,
                change_cents=change,
                payment_method=method,
                allow_oversell=False,
                user_id=user_id,
            )
            return order, payment, alerts

        order, payment, alerts = atomic(_op)
        logger.info(
            "Payment confirmed for order %s (paid_cents=%s, change_cents=%s)",
            order.order_number, order.paid_cents, order.change_cents,
        )
        safe_emit(self.notifier, PAYMENT_CONFIRMED, confirmation_payload(order, payment))
        emit_stock_alerts(self.notifier, alerts)
        return order, payment

    def list_payments(self, order_id: int) -> list[Payment]:
        return (
            db.session.query(Payment)
            .filter(Payment.order_id == order_id)
            .order_by(Payment.id.asc())
            .all()
        )
