# Overview: Service-layer operations for the inventory ledger; the only writer of Product.quantity.

"""
Inventory Ledger Invariants (authoritative)

Stock model:
- Product.quantity is the live on-hand count for track_inventory=True products.
- Every change to Product.quantity appends exactly one InventoryLog row in the
  same DB transaction; nothing else writes the column.
- The newest InventoryLog row of a product carries the product's quantity
  (current_stock == Product.quantity). verify_ledger() reports violations.

Movement types:
- IN, RETURN                current = previous + quantity
- OUT, DAMAGE               current = previous - quantity
- ADJUSTMENT, STOCK_TAKE    caller supplies the new absolute count; the log
                            stores the unsigned delta, direction is implied by
                            previous/current stock

Order-driven movements:
- Payment settlement decrements with OUT rows (reference ORDER/<order id>).
- Cancellation of a settled order restores with IN rows, refund with RETURN rows.
- Cash settlement refuses to go below zero. Gateway settlement may oversell
  because the money has already been captured; that is logged and alerted.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import InventoryLog, Order, Product
from .concurrency import atomic, lock_for_update
from .errors import InsufficientStock, NotFound, ValidationFailed
from .notification_service import (
    INVENTORY_LOW_STOCK,
    INVENTORY_OUT_OF_STOCK,
    INVENTORY_OVERSOLD,
    safe_emit,
)

logger = logging.getLogger(__name__)

MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_DAMAGE = "DAMAGE"
MOVEMENT_RETURN = "RETURN"
MOVEMENT_STOCK_TAKE = "STOCK_TAKE"

INCREASING_TYPES = {MOVEMENT_IN, MOVEMENT_RETURN}
DECREASING_TYPES = {MOVEMENT_OUT, MOVEMENT_DAMAGE}
ABSOLUTE_TYPES = {MOVEMENT_ADJUSTMENT, MOVEMENT_STOCK_TAKE}
MOVEMENT_TYPES = INCREASING_TYPES | DECREASING_TYPES | ABSOLUTE_TYPES

REFERENCE_ORDER = "ORDER"
REFERENCE_MANUAL = "MANUAL"


def _get_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter(Product.id == product_id, Product.deleted_at.is_(None))
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFound("Product not found", details={"product_id": product_id})
    return product


def _lock_products(product_ids) -> dict[int, Product]:
    """Lock products in ascending id order so concurrent orders acquire locks consistently."""
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    products = lock_for_update(
        db.session.query(Product).filter(Product.id.in_(ids)).order_by(Product.id.asc())
    ).all()
    return {p.id: p for p in products}


def record_movement(
    product: Product,
    movement_type: str,
    quantity: int,
    *,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    user_id: int | None = None,
    allow_negative: bool = False,
) -> InventoryLog:
    """
    Apply one stock movement to a (locked) product and append its ledger row.

    For ADJUSTMENT / STOCK_TAKE, `quantity` is the new absolute count.
    Must be called inside a unit of work; does not commit.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationFailed(
            "Invalid inventory movement type",
            details={"type": movement_type, "allowed": sorted(MOVEMENT_TYPES)},
        )
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        raise ValidationFailed("quantity must be an integer", details={"quantity": quantity})

    previous = product.quantity or 0

    if movement_type in ABSOLUTE_TYPES:
        if quantity < 0:
            raise ValidationFailed("Stock count cannot be negative", details={"quantity": quantity})
        current = quantity
        delta = abs(current - previous)
    else:
        if quantity <= 0:
            raise ValidationFailed("quantity must be positive", details={"quantity": quantity})
        delta = quantity
        current = previous + quantity if movement_type in INCREASING_TYPES else previous - quantity

    if current < 0 and not allow_negative:
        raise InsufficientStock(
            f"Insufficient stock for {product.name}",
            details={
                "product_id": product.id,
                "sku": product.sku,
                "requested_quantity": delta,
                "on_hand": previous,
            },
        )
    if current < 0:
        logger.warning(
            "Stock for product %s (%s) oversold: %s -> %s",
            product.id, product.sku, previous, current,
        )

    product.quantity = current
    log = InventoryLog(
        product_id=product.id,
        type=movement_type,
        quantity=delta,
        previous_stock=previous,
        current_stock=current,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        user_id=user_id,
    )
    db.session.add(log)
    return log


def stock_alerts(products) -> list[tuple[str, dict]]:
    """Collect low/out-of-stock alerts for products after a movement."""
    alerts = []
    for product in products:
        if not product.track_inventory:
            continue
        payload = {
            "product_id": product.id,
            "sku": product.sku,
            "name": product.name,
            "quantity": product.quantity,
            "low_stock_alert": product.low_stock_alert,
        }
        if product.quantity < 0:
            alerts.append((INVENTORY_OVERSOLD, payload))
        elif product.quantity == 0:
            alerts.append((INVENTORY_OUT_OF_STOCK, payload))
        elif product.low_stock_alert is not None and product.quantity <= product.low_stock_alert:
            alerts.append((INVENTORY_LOW_STOCK, payload))
    return alerts


def emit_stock_alerts(notifier, alerts) -> None:
    for event, payload in alerts:
        safe_emit(notifier, event, payload)


def decrement_for_order(order: Order, *, allow_oversell: bool = False, user_id: int | None = None) -> list[tuple[str, dict]]:
    """
    Append one OUT movement per tracked order item.

    Any failure propagates and rolls back the whole settlement; nothing is
    decremented for an order unless every item is.
    """
    products = _lock_products(item.product_id for item in order.items)
    touched = []
    for item in order.items:
        product = products.get(item.product_id)
        if product is None or not product.track_inventory:
            continue
        record_movement(
            product,
            MOVEMENT_OUT,
            item.quantity,
            reason=f"Sold in order {order.order_number}",
            reference_type=REFERENCE_ORDER,
            reference_id=order.id,
            user_id=user_id,
            allow_negative=allow_oversell,
        )
        touched.append(product)
    return stock_alerts(touched)


def restore_for_order(
    order: Order,
    *,
    movement_type: str = MOVEMENT_IN,
    reason: str | None = None,
    user_id: int | None = None,
) -> list[tuple[str, dict]]:
    """Compensate a settled order's OUT movements (IN on cancel, RETURN on refund)."""
    if movement_type not in INCREASING_TYPES:
        raise ValidationFailed("Restoration must use an increasing movement type", details={"type": movement_type})
    products = _lock_products(item.product_id for item in order.items)
    touched = []
    for item in order.items:
        product = products.get(item.product_id)
        if product is None or not product.track_inventory:
            continue
        record_movement(
            product,
            movement_type,
            item.quantity,
            reason=reason or f"Order {order.order_number} cancelled",
            reference_type=REFERENCE_ORDER,
            reference_id=order.id,
            user_id=user_id,
        )
        touched.append(product)
    return stock_alerts(touched)


def adjust_stock(
    product_id: int,
    movement_type: str,
    quantity: int,
    *,
    reason: str | None = None,
    user_id: int | None = None,
    notifier=None,
) -> InventoryLog:
    """
    Manual stock operation (receiving, damage, stock take, corrections).

    OUT / DAMAGE may not take stock below zero.
    """
    def _op():
        product = _get_product(product_id, lock=True)
        if not product.track_inventory:
            raise ValidationFailed(
                "Inventory tracking is disabled for this product",
                details={"product_id": product_id},
            )
        log = record_movement(
            product,
            movement_type,
            quantity,
            reason=reason,
            reference_type=REFERENCE_MANUAL,
            user_id=user_id,
        )
        return log, stock_alerts([product])

    log, alerts = atomic(_op)
    logger.info(
        "Stock adjusted for product %s: %s %s (%s -> %s)",
        product_id, log.type, log.quantity, log.previous_stock, log.current_stock,
    )
    emit_stock_alerts(notifier, alerts)
    return log


def latest_log(product_id: int) -> InventoryLog | None:
    return (
        db.session.query(InventoryLog)
        .filter(InventoryLog.product_id == product_id)
        .order_by(InventoryLog.id.desc())
        .first()
    )


def list_logs(product_id: int, *, limit: int = 50, offset: int = 0) -> list[InventoryLog]:
    _get_product(product_id)
    return (
        db.session.query(InventoryLog)
        .filter(InventoryLog.product_id == product_id)
        .order_by(InventoryLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def verify_ledger(product_id: int | None = None) -> list[dict]:
    """
    Report tracked products whose quantity disagrees with the ledger.

    A product is inconsistent when its quantity differs from the newest log's
    current_stock, or when it holds non-zero stock without any log at all.
    """
    query = db.session.query(Product).filter(Product.track_inventory.is_(True))
    if product_id is not None:
        query = query.filter(Product.id == product_id)

    problems = []
    for product in query.order_by(Product.id.asc()).all():
        log = latest_log(product.id)
        if log is None:
            if product.quantity != 0:
                problems.append({
                    "product_id": product.id,
                    "sku": product.sku,
                    "quantity": product.quantity,
                    "ledger_stock": None,
                    "issue": "missing_ledger",
                })
            continue
        if log.current_stock != product.quantity:
            problems.append({
                "product_id": product.id,
                "sku": product.sku,
                "quantity": product.quantity,
                "ledger_stock": log.current_stock,
                "issue": "mismatch",
            })
    return problems
