"""
Gateway Payment Service - token issuance, retries and status resolution

WHY: Hosted-payment orders settle asynchronously. This service issues tokens,
mints a fresh gateway order id per attempt, and applies whatever the gateway
reports (status poll or webhook) through the same settlement path as cash.

CORRELATION:
- Order.gateway_order_id: id of the current attempt ("<order number>" for the
  first, "<order number>-R<n>" for retry n)
- Payment rows with gateway_order_id: one per attempt, PENDING until resolved
- Order.payment_token_issued_at: token issue time (expiry window anchor)

NETWORK vs TRANSACTIONS:
Gateway calls happen outside any unit of work. The follow-up write re-locks
the order and re-checks its state, so a racing settlement or expiry wins
cleanly. A gateway timeout leaves local state untouched.

EXACTLY-ONCE SETTLEMENT:
Resolution reads the stored status under lock first; an order that is
already PAID (or later) is never settled again, so repeated polls and
duplicate webhooks cannot decrement stock twice.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Order, Payment
from orderflow.time_utils import parse_gateway_time, to_utc_z, utcnow
from .concurrency import atomic, lock_for_update
from .errors import (
    AlreadyPaid,
    GatewayError,
    GatewayTransactionNotFound,
    GatewayUnavailable,
    InvalidSignature,
    InvalidTransition,
    MaxRetriesExceeded,
    NotFound,
    OrderCancelled,
    OrderNotSettleable,
    TokenExpired,
    ValidationFailed,
)
from .expiry_service import (
    expiry_reason,
    is_token_expired,
    mark_order_expired,
    token_expires_at,
)
from .gateway_client import (
    GATEWAY_NAME,
    build_transaction_params,
    map_payment_type,
    map_transaction_status,
    redirect_url_for,
    verify_signature,
)
from .inventory_service import emit_stock_alerts
from .notification_service import ORDER_STATUS_CHANGED, PAYMENT_CONFIRMED, safe_emit
from .order_service import (
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_EXPIRED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_PROCESSING,
    STATUS_AWAITING_CONFIRMATION,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_PAID,
    STATUS_PENDING_PAYMENT,
    STATUS_REFUNDED,
    STOCK_DECREMENTED_STATUSES,
    TERMINAL_STATUSES,
    get_order_for_update,
    status_event_payload,
    transition_order,
)
from .payment_service import (
    TRANSACTION_PAYMENT,
    confirmation_payload,
    settle_order,
    supersede_pending_attempts,
)

logger = logging.getLogger(__name__)

RETRYABLE_ORDER_STATUSES = (STATUS_PENDING_PAYMENT, STATUS_CANCELLED)
RETRYABLE_PAYMENT_STATUSES = (PAYMENT_STATUS_PENDING, PAYMENT_STATUS_FAILED, PAYMENT_STATUS_EXPIRED)
ISSUABLE_STATUSES = (STATUS_DRAFT, STATUS_PENDING_PAYMENT, STATUS_AWAITING_CONFIRMATION)


def retry_count(order_id: int) -> int:
    """Number of FAILED/EXPIRED payment attempts recorded for the order."""
    return (
        db.session.query(Payment)
        .filter(
            Payment.order_id == order_id,
            Payment.transaction_type == TRANSACTION_PAYMENT,
            Payment.status.in_((PAYMENT_STATUS_FAILED, PAYMENT_STATUS_EXPIRED)),
        )
        .count()
    )


def next_retry_sequence(order) -> int:
    """Next `-R<n>` suffix for the order; always at least 1."""
    prefix = f"{order.order_number}-R"
    minted = (
        db.session.query(Payment.gateway_order_id)
        .filter(Payment.order_id == order.id, Payment.gateway_order_id.like(f"{prefix}%"))
        .all()
    )
    used = [int(gid[len(prefix):]) for (gid,) in minted if gid[len(prefix):].isdigit()]
    return max(used, default=0) + 1


def retry_gateway_order_id(order_number: str, sequence: int) -> str:
    return f"{order_number}-R{sequence}"


class GatewayPaymentService:
    def __init__(
        self,
        gateway,
        notifier=None,
        *,
        server_key: str | None = None,
        token_ttl_minutes: int = 10,
        max_retries: int = 5,
        app_url: str | None = None,
        verify_signatures: bool = True,
        is_production: bool = False,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.server_key = server_key
        self.token_ttl_minutes = token_ttl_minutes
        self.max_retries = max_retries
        self.app_url = app_url
        self.verify_signatures = verify_signatures
        self.is_production = is_production

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def _get_order(self, order_id: int) -> Order:
        order = db.session.query(Order).filter(Order.id == order_id, Order.deleted_at.is_(None)).first()
        if order is None:
            raise NotFound("Order not found", details={"order_id": order_id})
        return order

    def _find_order_by_gateway_id(self, gateway_order_id: str) -> Order:
        order = db.session.query(Order).filter(Order.gateway_order_id == gateway_order_id).first()
        if order is None:
            payment = db.session.query(Payment).filter(Payment.gateway_order_id == gateway_order_id).first()
            if payment is not None:
                order = payment.order
        if order is None:
            order = db.session.query(Order).filter(Order.order_number == gateway_order_id).first()
        if order is None or order.deleted_at is not None:
            raise NotFound("Order not found", details={"gateway_order_id": gateway_order_id})
        return order

    def _token_response(self, order: Order, *, reused: bool, redirect_url: str | None = None) -> dict:
        expires_at = token_expires_at(order, self.token_ttl_minutes)
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "gateway_order_id": order.gateway_order_id,
            "token": order.payment_token,
            "redirect_url": redirect_url or redirect_url_for(order.payment_token, is_production=self.is_production),
            "expires_at": to_utc_z(expires_at),
            "reused": reused,
        }

    # =========================================================================
    # TOKEN ISSUANCE
    # =========================================================================

    def _ensure_issuable(self, order: Order) -> None:
        if order.status in STOCK_DECREMENTED_STATUSES or order.payment_status == PAYMENT_STATUS_COMPLETED:
            raise AlreadyPaid("Order is already paid", details={"order_id": order.id, "current_status": order.status})
        if order.status == STATUS_CANCELLED:
            raise OrderCancelled("Order is cancelled", details={"order_id": order.id, "current_status": order.status})
        if order.status not in ISSUABLE_STATUSES:
            raise OrderNotSettleable(
                f"Cannot create a payment for a {order.status} order",
                details={"order_id": order.id, "current_status": order.status},
            )

    def _record_attempt(self, order: Order, gateway_order_id: str, result: dict, now) -> Payment:
        order.payment_token = result["token"]
        order.payment_token_issued_at = now
        order.gateway_order_id = gateway_order_id
        order.payment_status = PAYMENT_STATUS_PENDING
        if order.status != STATUS_PENDING_PAYMENT:
            transition_order(order, STATUS_PENDING_PAYMENT, now=now, reopen=True)

        attempt = Payment(
            order_id=order.id,
            payment_method=order.payment_method or "OTHER",
            amount_cents=order.total_cents,
            status=PAYMENT_STATUS_PENDING,
            transaction_type=TRANSACTION_PAYMENT,
            gateway_name=getattr(self.gateway, "name", GATEWAY_NAME),
            gateway_order_id=gateway_order_id,
            reference_number=order.order_number,
            gateway_response={"token": result["token"], "redirect_url": result.get("redirect_url")},
        )
        db.session.add(attempt)
        return attempt

    def create_gateway_transaction(self, order_id: int, customer_details: dict | None = None) -> dict:
        """
        Issue (or reuse) a hosted-payment token for an unpaid order.

        An unexpired token is returned unchanged without contacting the gateway.
        An expired one must go through retry_gateway_transaction().
        """
        order = self._get_order(order_id)
        self._ensure_issuable(order)

        if order.payment_token:
            if not is_token_expired(order, self.token_ttl_minutes):
                return self._token_response(order, reused=True)
            raise TokenExpired(
                "Payment token expired; retry the payment",
                details={"order_id": order.id, "gateway_order_id": order.gateway_order_id},
            )

        gateway_order_id = order.order_number
        params = build_transaction_params(
            order,
            gateway_order_id,
            customer_details=customer_details,
            expiry_minutes=self.token_ttl_minutes,
            app_url=self.app_url,
        )
        db.session.rollback()
        result = self.gateway.create_transaction(params)

        def _op():
            locked = get_order_for_update(order_id)
            self._ensure_issuable(locked)
            if locked.payment_token:
                # A concurrent request issued a token first.
                return locked, False
            self._record_attempt(locked, gateway_order_id, result, utcnow())
            return locked, True

        order, issued = atomic(_op)
        if not issued:
            return self._token_response(order, reused=True)
        logger.info("Payment token issued for order %s (gateway order id %s)", order.order_number, gateway_order_id)
        return self._token_response(order, reused=False, redirect_url=result.get("redirect_url"))

    # =========================================================================
    # RETRIES
    # =========================================================================

    def _check_retry_allowed(self, order: Order) -> int:
        if order.status in STOCK_DECREMENTED_STATUSES or order.payment_status == PAYMENT_STATUS_COMPLETED:
            raise AlreadyPaid("Order is already paid", details={"order_id": order.id, "current_status": order.status})
        if order.status not in RETRYABLE_ORDER_STATUSES or order.payment_status not in RETRYABLE_PAYMENT_STATUSES:
            raise OrderNotSettleable(
                "Payment cannot be retried for this order",
                details={
                    "order_id": order.id,
                    "current_status": order.status,
                    "payment_status": order.payment_status,
                },
            )
        count = retry_count(order.id)
        if count >= self.max_retries:
            raise MaxRetriesExceeded(
                f"Maximum payment retries ({self.max_retries}) exceeded",
                details={"order_id": order.id, "retry_count": count, "max_retries": self.max_retries},
            )
        return count

    def retry_gateway_transaction(self, order_id: int, customer_details: dict | None = None) -> dict:
        """
        Mint a new gateway attempt for an unpaid or expired order.

        Any still-open previous attempt is closed as FAILED and a new Payment
        row is created for the new gateway order id.
        """
        order = self._get_order(order_id)
        self._check_retry_allowed(order)

        gateway_order_id = retry_gateway_order_id(order.order_number, next_retry_sequence(order))
        params = build_transaction_params(
            order,
            gateway_order_id,
            customer_details=customer_details,
            expiry_minutes=self.token_ttl_minutes,
            app_url=self.app_url,
        )
        db.session.rollback()
        result = self.gateway.create_transaction(params)

        def _op():
            locked = get_order_for_update(order_id)
            self._check_retry_allowed(locked)
            now = utcnow()
            old_status = locked.status
            supersede_pending_attempts(locked, now)
            self._record_attempt(locked, gateway_order_id, result, now)
            return locked, old_status

        order, old_status = atomic(_op)
        count = retry_count(order.id)
        logger.info(
            "Payment retry for order %s (gateway order id %s, retry %s/%s)",
            order.order_number, gateway_order_id, count, self.max_retries,
        )
        if old_status != order.status:
            safe_emit(self.notifier, ORDER_STATUS_CHANGED, status_event_payload(order, old_status))

        response = self._token_response(order, reused=False, redirect_url=result.get("redirect_url"))
        response.update({
            "retry_count": count,
            "max_retries": self.max_retries,
            "remaining_retries": max(self.max_retries - count, 0),
        })
        return response

    def get_retry_info(self, order_id: int) -> dict:
        order = self._get_order(order_id)
        count = retry_count(order.id)
        now = utcnow()
        expires_at = token_expires_at(order, self.token_ttl_minutes)
        remaining_seconds = 0
        if expires_at is not None and order.payment_token:
            remaining_seconds = max(int((expires_at - now).total_seconds()), 0)

        can_retry = (
            order.status in RETRYABLE_ORDER_STATUSES
            and order.payment_status in RETRYABLE_PAYMENT_STATUSES
            and count < self.max_retries
        )
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
            "can_retry": can_retry,
            "retry_count": count,
            "max_retries": self.max_retries,
            "remaining_retries": max(self.max_retries - count, 0),
            "token_expired": bool(order.payment_token) and is_token_expired(order, self.token_ttl_minutes, now),
            "time_remaining_seconds": remaining_seconds,
        }

    # =========================================================================
    # STATUS RESOLUTION
    # =========================================================================

    def check_gateway_status(self, order_id: int) -> dict:
        """
        Poll the gateway and apply the reported state.

        Not-found at the gateway plus an expired local token expires the order
        locally. A timeout raises GatewayUnavailable without touching state.
        """
        order = self._get_order(order_id)
        gateway_order_id = order.gateway_order_id or order.order_number
        token_expired = bool(order.payment_token) and is_token_expired(order, self.token_ttl_minutes)
        db.session.rollback()

        try:
            data = self.gateway.get_status(gateway_order_id)
        except GatewayTransactionNotFound:
            if token_expired:
                return self._expire_locally(order_id)
            raise

        return self.apply_gateway_status(order_id, data)

    def _expire_locally(self, order_id: int) -> dict:
        reason = expiry_reason(self.token_ttl_minutes)

        def _op():
            order = get_order_for_update(order_id)
            if order.status != STATUS_PENDING_PAYMENT or order.payment_status != PAYMENT_STATUS_PENDING:
                return order, order.status, False
            old_status = mark_order_expired(order, now=utcnow(), reason=reason)
            return order, old_status, True

        order, old_status, changed = atomic(_op)
        if changed:
            logger.info("Order %s expired locally (transaction unknown at gateway)", order.order_number)
            safe_emit(self.notifier, ORDER_STATUS_CHANGED, status_event_payload(order, old_status))
        return {
            "order": order.to_dict(include_items=False),
            "gateway_status": None,
            "changed": changed,
            "settled": False,
        }

    def apply_gateway_status(self, order_id: int, data: dict) -> dict:
        """Apply a gateway status payload to the order exactly once."""
        transaction_status = data.get("transaction_status")
        fraud_status = data.get("fraud_status")
        mapped = map_transaction_status(transaction_status, fraud_status)
        reported_id = data.get("order_id")

        def _op():
            order = get_order_for_update(order_id)
            old_status = order.status
            attempt = self._attempt_for(order, reported_id)
            if attempt is not None:
                attempt.gateway_status = transaction_status
                attempt.gateway_response = data
                if data.get("transaction_id") and attempt.gateway_transaction_id is None:
                    attempt.gateway_transaction_id = data.get("transaction_id")

            if mapped is None:
                return order, old_status, False, False, []

            target_status, target_payment_status = mapped
            now = utcnow()

            if target_status == STATUS_PAID:
                if order.status in STOCK_DECREMENTED_STATUSES:
                    return order, old_status, False, False, []
                if order.status == STATUS_CANCELLED and order.payment_status in RETRYABLE_PAYMENT_STATUSES:
                    # Captured at the gateway after a local cancel; stock was never taken.
                    transition_order(order, STATUS_PENDING_PAYMENT, now=now, reopen=True)
                    order.payment_status = PAYMENT_STATUS_PENDING
                    logger.info(
                        "Gateway reported %s for cancelled order %s; reopening to settle",
                        transaction_status, order.order_number,
                    )
                if order.status in TERMINAL_STATUSES:
                    logger.warning(
                        "Gateway reported %s for %s order %s; not settling",
                        transaction_status, order.status, order.order_number,
                    )
                    return order, old_status, False, False, []
                if attempt is None:
                    attempt = self._adopt_attempt(order, reported_id, data)
                paid_at = (
                    parse_gateway_time(data.get("settlement_time"))
                    or parse_gateway_time(data.get("transaction_time"))
                    or now
                )
                alerts = settle_order(
                    order,
                    payment=attempt,
                    paid_at=paid_at,
                    paid_cents=order.total_cents,
                    change_cents=0,
                    payment_method=map_payment_type(data.get("payment_type")),
                    allow_oversell=True,
                )
                attempt.payment_method = order.payment_method
                return order, old_status, True, True, alerts

            if target_status == STATUS_AWAITING_CONFIRMATION:
                if order.status != STATUS_PENDING_PAYMENT:
                    return order, old_status, False, False, []
                transition_order(order, STATUS_AWAITING_CONFIRMATION, now=now)
                order.payment_status = PAYMENT_STATUS_PROCESSING
                if attempt is not None and attempt.status == PAYMENT_STATUS_PENDING:
                    attempt.status = PAYMENT_STATUS_PROCESSING
                return order, old_status, True, False, []

            if target_status == STATUS_PENDING_PAYMENT:
                return order, old_status, False, False, []

            if target_status == STATUS_CANCELLED:
                if attempt is not None and attempt.status in (PAYMENT_STATUS_PENDING, PAYMENT_STATUS_PROCESSING):
                    attempt.status = target_payment_status
                    if target_payment_status == PAYMENT_STATUS_EXPIRED:
                        attempt.expired_at = now
                    else:
                        attempt.failed_at = now
                stale = attempt is not None and attempt.gateway_order_id != order.gateway_order_id
                if stale or order.status in STOCK_DECREMENTED_STATUSES or order.status in TERMINAL_STATUSES:
                    return order, old_status, False, False, []
                transition_order(
                    order,
                    STATUS_CANCELLED,
                    reason=f"Payment {transaction_status} at gateway",
                    now=now,
                )
                order.payment_status = target_payment_status
                return order, old_status, True, False, []

            if target_status == STATUS_REFUNDED:
                if order.status == STATUS_REFUNDED:
                    return order, old_status, False, False, []
                alerts = transition_order(order, STATUS_REFUNDED, reason="Refunded at gateway", now=now)[1]
                order.payment_status = target_payment_status
                return order, old_status, True, False, alerts

            return order, old_status, False, False, []

        order, old_status, changed, settled, alerts = atomic(_op)

        if settled:
            logger.info("Order %s settled via gateway (%s)", order.order_number, transaction_status)
            payment = next((p for p in order.payments if p.status == PAYMENT_STATUS_COMPLETED), None)
            if payment is not None:
                safe_emit(self.notifier, PAYMENT_CONFIRMED, confirmation_payload(order, payment))
        elif changed:
            safe_emit(self.notifier, ORDER_STATUS_CHANGED, status_event_payload(order, old_status))
        emit_stock_alerts(self.notifier, alerts)

        return {
            "order": order.to_dict(include_items=False),
            "gateway_status": transaction_status,
            "fraud_status": fraud_status,
            "changed": changed,
            "settled": settled,
        }

    def _attempt_for(self, order: Order, reported_id: str | None) -> Payment | None:
        gateway_order_id = reported_id or order.gateway_order_id
        if not gateway_order_id:
            return None
        return lock_for_update(
            db.session.query(Payment).filter(
                Payment.order_id == order.id,
                Payment.gateway_order_id == gateway_order_id,
            )
        ).first()

    def _adopt_attempt(self, order: Order, reported_id: str | None, data: dict) -> Payment:
        """Create the attempt row for a settlement the gateway knows but we never recorded."""
        gateway_order_id = reported_id or order.gateway_order_id or order.order_number
        taken = db.session.query(Payment.id).filter(Payment.gateway_order_id == gateway_order_id).first()
        attempt = Payment(
            order_id=order.id,
            payment_method=map_payment_type(data.get("payment_type")),
            amount_cents=order.total_cents,
            status=PAYMENT_STATUS_PENDING,
            transaction_type=TRANSACTION_PAYMENT,
            gateway_name=getattr(self.gateway, "name", GATEWAY_NAME),
            gateway_order_id=None if taken else gateway_order_id,
            gateway_transaction_id=data.get("transaction_id"),
            gateway_status=data.get("transaction_status"),
            gateway_response=data,
            reference_number=order.order_number,
        )
        db.session.add(attempt)
        db.session.flush()
        return attempt

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def cancel_gateway_transaction(self, order_id: int) -> dict:
        """
        Cancel the current gateway attempt and apply the gateway's answer.

        A transaction the gateway never saw (customer never opened the payment
        page) is cancelled locally. If the gateway reports the payment already
        settled, the order is settled instead.
        """
        order = self._get_order(order_id)
        if order.status in STOCK_DECREMENTED_STATUSES or order.payment_status == PAYMENT_STATUS_COMPLETED:
            raise AlreadyPaid("Order is already paid", details={"order_id": order.id, "current_status": order.status})
        if order.status == STATUS_CANCELLED:
            raise OrderCancelled("Order is cancelled", details={"order_id": order.id, "current_status": order.status})
        if not order.payment_token:
            raise OrderNotSettleable(
                "Order has no gateway payment to cancel",
                details={"order_id": order.id, "current_status": order.status},
            )

        gateway_order_id = order.gateway_order_id or order.order_number
        db.session.rollback()
        try:
            data = self.gateway.cancel(gateway_order_id)
        except GatewayTransactionNotFound:
            data = {"order_id": gateway_order_id, "transaction_status": "cancel"}

        if not data.get("order_id"):
            data = {**data, "order_id": gateway_order_id}
        logger.info("Gateway payment %s cancelled (%s)", gateway_order_id, data.get("transaction_status"))
        return self.apply_gateway_status(order_id, data)

    # =========================================================================
    # WEBHOOK
    # =========================================================================

    def handle_notification(self, payload: dict) -> dict:
        """
        Verify and apply an asynchronous gateway notification.

        The gateway is re-queried for the authoritative status; when it cannot
        be reached the notification's own (signed) status is used.
        """
        if not isinstance(payload, dict):
            raise ValidationFailed("Notification payload must be an object")
        missing = [k for k in ("order_id", "status_code", "gross_amount") if not payload.get(k)]
        if missing:
            raise ValidationFailed("Notification is missing required fields", details={"missing": missing})

        gateway_order_id = str(payload["order_id"])
        if self.verify_signatures and not verify_signature(
            gateway_order_id,
            str(payload["status_code"]),
            str(payload["gross_amount"]),
            payload.get("signature_key") or "",
            self.server_key or "",
        ):
            logger.warning("Rejected notification with invalid signature for %s", gateway_order_id)
            raise InvalidSignature("Invalid notification signature", details={"order_id": gateway_order_id})

        order = self._find_order_by_gateway_id(gateway_order_id)
        order_id = order.id
        db.session.rollback()

        try:
            data = self.gateway.get_status(gateway_order_id)
        except (GatewayUnavailable, GatewayTransactionNotFound) as exc:
            logger.warning("Using notification payload for %s: %s", gateway_order_id, exc.message)
            data = payload
        except GatewayError:
            logger.exception("Gateway status lookup failed for %s", gateway_order_id)
            data = payload

        if not data.get("order_id"):
            data = {**data, "order_id": gateway_order_id}

        try:
            return self.apply_gateway_status(order_id, data)
        except InvalidTransition as exc:
            logger.warning("Notification for %s not applied: %s", gateway_order_id, exc.message)
            return {
                "order": self._get_order(order_id).to_dict(include_items=False),
                "gateway_status": data.get("transaction_status"),
                "changed": False,
                "settled": False,
            }
