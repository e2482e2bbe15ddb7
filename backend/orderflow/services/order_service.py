"""
Order Service - order intake and the status state machine

WHY: Orders are created unpaid and never reserve stock. Stock moves only when a
payment settles (OUT) and is compensated when a settled order is cancelled (IN)
or refunded (RETURN). All of it happens in one unit of work with the status
write, so a failure anywhere leaves the order untouched.

STATE MACHINE:
    DRAFT -> PENDING_PAYMENT -> [AWAITING_CONFIRMATION ->] PAID
          -> PREPARING -> READY -> COMPLETED
    CANCELLED / REFUNDED reachable from any non-terminal state.
    COMPLETED, CANCELLED, REFUNDED are terminal.

PAID is entered only through settlement (cash confirmation or gateway
resolution); see payment_service.settle_order().
"""

from __future__ import annotations

import logging
import random
import string
import time

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderItem, Payment, Product
from orderflow.time_utils import utcnow
from .concurrency import atomic, lock_for_update
from .errors import (
    DuplicateOrderNumber,
    InsufficientStock,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from .inventory_service import (
    MOVEMENT_IN,
    MOVEMENT_RETURN,
    emit_stock_alerts,
    restore_for_order,
)
from .notification_service import ORDER_CREATED, ORDER_STATUS_CHANGED, safe_emit

logger = logging.getLogger(__name__)

# =============================================================================
# ENUMERATIONS
# =============================================================================

STATUS_DRAFT = "DRAFT"
STATUS_PENDING_PAYMENT = "PENDING_PAYMENT"
STATUS_AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
STATUS_PAID = "PAID"
STATUS_PREPARING = "PREPARING"
STATUS_READY = "READY"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"
STATUS_REFUNDED = "REFUNDED"

ORDER_STATUSES = (
    STATUS_DRAFT,
    STATUS_PENDING_PAYMENT,
    STATUS_AWAITING_CONFIRMATION,
    STATUS_PAID,
    STATUS_PREPARING,
    STATUS_READY,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
    STATUS_REFUNDED,
)

TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_CANCELLED, STATUS_REFUNDED}

# Statuses reached only after settlement decremented stock
STOCK_DECREMENTED_STATUSES = {STATUS_PAID, STATUS_PREPARING, STATUS_READY, STATUS_COMPLETED}

ALLOWED_TRANSITIONS = {
    STATUS_DRAFT: {STATUS_PENDING_PAYMENT, STATUS_CANCELLED, STATUS_REFUNDED},
    STATUS_PENDING_PAYMENT: {STATUS_AWAITING_CONFIRMATION, STATUS_PAID, STATUS_CANCELLED, STATUS_REFUNDED},
    STATUS_AWAITING_CONFIRMATION: {STATUS_PAID, STATUS_PENDING_PAYMENT, STATUS_CANCELLED, STATUS_REFUNDED},
    STATUS_PAID: {STATUS_PREPARING, STATUS_READY, STATUS_COMPLETED, STATUS_CANCELLED, STATUS_REFUNDED},
    STATUS_PREPARING: {STATUS_READY, STATUS_COMPLETED, STATUS_CANCELLED, STATUS_REFUNDED},
    STATUS_READY: {STATUS_COMPLETED, STATUS_CANCELLED, STATUS_REFUNDED},
}

STATUS_TIMESTAMPS = {
    STATUS_PAID: "paid_at",
    STATUS_PREPARING: "preparing_at",
    STATUS_READY: "ready_at",
    STATUS_COMPLETED: "completed_at",
    STATUS_CANCELLED: "cancelled_at",
}

ORDER_TYPES = ("DINE_IN", "TAKEAWAY", "DELIVERY")
ORDER_SOURCES = ("CUSTOMER", "CASHIER", "ONLINE", "PHONE")

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_PROCESSING = "PROCESSING"
PAYMENT_STATUS_COMPLETED = "COMPLETED"
PAYMENT_STATUS_FAILED = "FAILED"
PAYMENT_STATUS_EXPIRED = "EXPIRED"
PAYMENT_STATUS_REFUNDED = "REFUNDED"

PAYMENT_METHODS = ("CASH", "BANK_TRANSFER", "QRIS", "CREDIT_CARD", "DEBIT_CARD", "E_WALLET", "OTHER")

MONEY_FIELDS = ("discount_cents", "tax_cents", "service_charge_cents", "delivery_fee_cents")


# =============================================================================
# HELPERS
# =============================================================================

def generate_order_number() -> str:
    """Human-facing order number: ORD-<epoch ms>-<5 uppercase alphanumerics>."""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def _as_int(value, field: str, *, minimum: int = 0, required: bool = False, default: int | None = 0) -> int | None:
    if value is None:
        if required:
            raise ValidationFailed(f"{field} is required", details={"field": field})
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed(f"{field} must be an integer", details={"field": field, "value": value})
    if value < minimum:
        raise ValidationFailed(f"{field} must be >= {minimum}", details={"field": field, "value": value})
    return value


def _clean_str(value, field: str, max_len: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationFailed(f"{field} must be a string", details={"field": field})
    value = value.strip()
    if not value:
        return None
    if len(value) > max_len:
        raise ValidationFailed(f"{field} must be at most {max_len} characters", details={"field": field})
    return value


def get_order_for_update(order_id: int) -> Order:
    order = lock_for_update(
        db.session.query(Order).filter(Order.id == order_id, Order.deleted_at.is_(None))
    ).first()
    if order is None:
        raise NotFound("Order not found", details={"order_id": order_id})
    return order


def status_event_payload(order: Order, old_status: str) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "old_status": old_status,
        "status": order.status,
        "payment_status": order.payment_status,
    }


# =============================================================================
# STATE MACHINE
# =============================================================================

def transition_order(
    order: Order,
    new_status: str,
    *,
    reason: str | None = None,
    user_id: int | None = None,
    now=None,
    settlement: bool = False,
    reopen: bool = False,
) -> tuple[bool, list]:
    """
    Move a locked order to `new_status` inside the caller's unit of work.

    Returns (changed, stock_alerts). Re-entering the current status is a no-op
    (timestamps are never rewritten). Cancelling or refunding an order whose
    stock was already decremented restores that stock in the same transaction.

    `settlement` must be set to enter PAID. `reopen` lets a gateway retry or a
    late gateway capture bring a CANCELLED order back to PENDING_PAYMENT. That
    is the one transition that clears a timestamp: the cancellation is voided,
    so `cancelled_at` and `cancellation_reason` are reset and a later
    cancellation records its own.
    """
    if new_status not in ORDER_STATUSES:
        raise ValidationFailed(
            "Invalid order status",
            details={"status": new_status, "allowed": list(ORDER_STATUSES)},
        )

    old_status = order.status
    if old_status == new_status:
        if new_status in TERMINAL_STATUSES and new_status != STATUS_CANCELLED:
            raise InvalidTransition(
                f"Order is already {old_status}",
                details={"order_id": order.id, "current_status": old_status, "requested_status": new_status},
            )
        return False, []

    reopening = reopen and old_status == STATUS_CANCELLED and new_status == STATUS_PENDING_PAYMENT
    if old_status in TERMINAL_STATUSES and not reopening:
        raise InvalidTransition(
            f"Cannot change status of a {old_status} order",
            details={"order_id": order.id, "current_status": old_status, "requested_status": new_status},
        )
    if not reopening and new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
        raise InvalidTransition(
            f"Cannot move order from {old_status} to {new_status}",
            details={"order_id": order.id, "current_status": old_status, "requested_status": new_status},
        )
    if new_status == STATUS_PAID and not settlement:
        raise InvalidTransition(
            "Orders become PAID only through payment settlement",
            details={"order_id": order.id, "current_status": old_status},
        )

    now = now or utcnow()
    alerts = []

    if old_status in STOCK_DECREMENTED_STATUSES and new_status == STATUS_CANCELLED:
        alerts = restore_for_order(
            order,
            movement_type=MOVEMENT_IN,
            reason=f"Order {order.order_number} cancelled",
            user_id=user_id,
        )
    elif old_status in STOCK_DECREMENTED_STATUSES and new_status == STATUS_REFUNDED:
        alerts = restore_for_order(
            order,
            movement_type=MOVEMENT_RETURN,
            reason=f"Order {order.order_number} refunded",
            user_id=user_id,
        )

    if new_status == STATUS_REFUNDED:
        _refund_payments(order, now)

    if reopening:
        order.cancelled_at = None
        order.cancellation_reason = None

    order.status = new_status
    ts_field = STATUS_TIMESTAMPS.get(new_status)
    if ts_field and getattr(order, ts_field) is None:
        setattr(order, ts_field, now)
    if new_status == STATUS_CANCELLED and reason and not order.cancellation_reason:
        order.cancellation_reason = reason

    logger.info("Order %s status %s -> %s", order.order_number, old_status, new_status)
    return True, alerts


def _refund_payments(order: Order, now) -> None:
    completed = (
        db.session.query(Payment)
        .filter(Payment.order_id == order.id, Payment.status == PAYMENT_STATUS_COMPLETED)
        .all()
    )
    for payment in completed:
        payment.status = PAYMENT_STATUS_REFUNDED
        payment.refunded_at = now
    if order.payment_status == PAYMENT_STATUS_COMPLETED:
        order.payment_status = PAYMENT_STATUS_REFUNDED


# =============================================================================
# SERVICE
# =============================================================================

class OrderService:
    """Order intake, lookups and general status updates."""

    def __init__(self, notifier=None, *, enforce_catalog_prices: bool = True):
        self.notifier = notifier
        self.enforce_catalog_prices = enforce_catalog_prices

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_order(self, payload: dict, *, user_id: int | None = None) -> Order:
        """
        Validate a cart and persist Order + OrderItems atomically.

        Payload keys: order_number (optional), order_type, order_source, items
        [{product_id, quantity, unit_price_cents, discount_cents, tax_cents,
        notes}], customer_* fields, table_number, discount_cents, tax_cents,
        service_charge_cents, delivery_fee_cents, total_cents (optional; must
        match the computed total when supplied), payment_method, notes.

        Stock is validated but not decremented.
        """
        if not isinstance(payload, dict):
            raise ValidationFailed("Order payload must be an object")

        order_type = payload.get("order_type")
        if order_type not in ORDER_TYPES:
            raise ValidationFailed("Invalid order_type", details={"allowed": list(ORDER_TYPES)})
        order_source = payload.get("order_source") or "CASHIER"
        if order_source not in ORDER_SOURCES:
            raise ValidationFailed("Invalid order_source", details={"allowed": list(ORDER_SOURCES)})

        payment_method = payload.get("payment_method")
        if payment_method is not None and payment_method not in PAYMENT_METHODS:
            raise ValidationFailed("Invalid payment_method", details={"allowed": list(PAYMENT_METHODS)})

        customer_name = _clean_str(payload.get("customer_name"), "customer_name", 255)
        customer_phone = _clean_str(payload.get("customer_phone"), "customer_phone", 20)
        customer_email = _clean_str(payload.get("customer_email"), "customer_email", 255)
        customer_address = _clean_str(payload.get("customer_address"), "customer_address", 2000)
        table_number = _clean_str(payload.get("table_number"), "table_number", 20)

        if order_type == "DELIVERY" and (not customer_name or not customer_phone):
            raise ValidationFailed("Delivery orders require customer name and phone")
        if order_type == "DINE_IN" and not table_number:
            raise ValidationFailed("Dine-in orders require a table number")

        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationFailed("Order must contain at least one item")

        amounts = {field: _as_int(payload.get(field), field) for field in MONEY_FIELDS}
        claimed_total = _as_int(payload.get("total_cents"), "total_cents", default=None)

        order_number = payload.get("order_number")
        if order_number is not None:
            order_number = _clean_str(order_number, "order_number", 50)
        order_number = order_number or generate_order_number()

        def _op():
            if db.session.query(Order.id).filter(Order.order_number == order_number).first():
                raise DuplicateOrderNumber(
                    "Order number already exists",
                    details={"order_number": order_number},
                )

            items = [self._build_item(index, raw) for index, raw in enumerate(raw_items)]
            self._check_stock(items)

            subtotal = sum(item.subtotal_cents for item in items)
            if amounts["discount_cents"] > subtotal:
                raise ValidationFailed(
                    "Discount cannot exceed subtotal",
                    details={"subtotal_cents": subtotal, "discount_cents": amounts["discount_cents"]},
                )
            total = (
                subtotal
                - amounts["discount_cents"]
                + amounts["tax_cents"]
                + amounts["service_charge_cents"]
                + amounts["delivery_fee_cents"]
            )
            if claimed_total is not None and claimed_total != total:
                raise ValidationFailed(
                    "total_cents does not match computed total",
                    details={"total_cents": claimed_total, "computed_total_cents": total},
                )

            order = Order(
                order_number=order_number,
                order_type=order_type,
                order_source=order_source,
                status=STATUS_PENDING_PAYMENT,
                payment_status=PAYMENT_STATUS_PENDING,
                customer_name=customer_name,
                customer_phone=customer_phone,
                customer_email=customer_email,
                customer_address=customer_address,
                table_number=table_number,
                subtotal_cents=subtotal,
                total_cents=total,
                payment_method=payment_method,
                notes=payload.get("notes"),
                cashier_id=user_id,
                **amounts,
            )
            order.items = items
            db.session.add(order)
            try:
                db.session.flush()
            except IntegrityError as exc:
                raise DuplicateOrderNumber(
                    "Order number already exists",
                    details={"order_number": order_number},
                ) from exc
            return order

        order = atomic(_op)
        logger.info("Order %s created (total_cents=%s, items=%s)", order.order_number, order.total_cents, len(order.items))
        safe_emit(self.notifier, ORDER_CREATED, {
            "order_id": order.id,
            "order_number": order.order_number,
            "order_type": order.order_type,
            "total_cents": order.total_cents,
            "status": order.status,
        })
        return order

    def _build_item(self, index: int, raw) -> OrderItem:
        if not isinstance(raw, dict):
            raise ValidationFailed("Each item must be an object", details={"index": index})
        product_id = _as_int(raw.get("product_id"), "product_id", minimum=1, required=True)
        quantity = _as_int(raw.get("quantity"), "quantity", minimum=1, required=True)

        product = (
            db.session.query(Product)
            .filter(Product.id == product_id, Product.deleted_at.is_(None))
            .first()
        )
        if product is None:
            raise NotFound("Product not found", details={"product_id": product_id, "index": index})
        if not product.is_available:
            raise ValidationFailed("Product is not available", details={"product_id": product_id})

        unit_price = _as_int(raw.get("unit_price_cents"), "unit_price_cents", default=None)
        if unit_price is None:
            unit_price = product.price_cents
        elif self.enforce_catalog_prices and unit_price != product.price_cents:
            raise ValidationFailed(
                "Item price does not match catalog price",
                details={
                    "product_id": product_id,
                    "unit_price_cents": unit_price,
                    "catalog_price_cents": product.price_cents,
                },
            )

        discount = _as_int(raw.get("discount_cents"), "discount_cents")
        tax = _as_int(raw.get("tax_cents"), "tax_cents")
        subtotal = unit_price * quantity
        if discount > subtotal:
            raise ValidationFailed("Item discount cannot exceed item subtotal", details={"index": index})

        return OrderItem(
            product_id=product.id,
            product=product,
            product_name=product.name,
            product_sku=product.sku,
            quantity=quantity,
            unit_price_cents=unit_price,
            cost_price_cents=product.cost_price_cents,
            discount_cents=discount,
            subtotal_cents=subtotal,
            tax_cents=tax,
            total_cents=subtotal - discount + tax,
            notes=raw.get("notes"),
        )

    def _check_stock(self, items: list[OrderItem]) -> None:
        requested: dict[int, int] = {}
        products: dict[int, Product] = {}
        for item in items:
            if not item.product.track_inventory:
                continue
            requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
            products[item.product_id] = item.product

        insufficient = []
        for product_id, qty in requested.items():
            on_hand = products[product_id].quantity
            if on_hand < qty:
                insufficient.append({
                    "product_id": product_id,
                    "name": products[product_id].name,
                    "requested_quantity": qty,
                    "on_hand": on_hand,
                })
        if insufficient:
            raise InsufficientStock("Insufficient stock", details={"items": insufficient})

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_order(self, order_id: int) -> Order:
        order = (
            db.session.query(Order)
            .filter(Order.id == order_id, Order.deleted_at.is_(None))
            .first()
        )
        if order is None:
            raise NotFound("Order not found", details={"order_id": order_id})
        return order

    def list_orders(
        self,
        *,
        status: str | None = None,
        payment_status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        query = db.session.query(Order).filter(Order.deleted_at.is_(None))
        if status:
            query = query.filter(Order.status == status)
        if payment_status:
            query = query.filter(Order.payment_status == payment_status)
        return query.order_by(Order.id.desc()).offset(offset).limit(limit).all()

    def soft_delete_order(self, order_id: int) -> Order:
        def _op():
            order = get_order_for_update(order_id)
            order.deleted_at = utcnow()
            return order

        order = atomic(_op)
        logger.info("Order %s soft-deleted", order.order_number)
        return order

    # -------------------------------------------------------------------------
    # Status updates
    # -------------------------------------------------------------------------

    def update_status(
        self,
        order_id: int,
        new_status: str,
        *,
        reason: str | None = None,
        user_id: int | None = None,
    ) -> Order:
        """General status path (kitchen progress, cancellation, refund)."""
        def _op():
            order = get_order_for_update(order_id)
            old_status = order.status
            changed, alerts = transition_order(order, new_status, reason=reason, user_id=user_id)
            return order, old_status, changed, alerts

        order, old_status, changed, alerts = atomic(_op)
        if changed:
            safe_emit(self.notifier, ORDER_STATUS_CHANGED, status_event_payload(order, old_status))
            emit_stock_alerts(self.notifier, alerts)
        return order

    def cancel_order(self, order_id: int, *, reason: str | None = None, user_id: int | None = None) -> Order:
        """Cancel an order; settled orders get their stock restored atomically."""
        return self.update_status(order_id, STATUS_CANCELLED, reason=reason, user_id=user_id)
