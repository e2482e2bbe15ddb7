# Overview: Flask API routes for order intake, status changes and cash confirmation; parses input and returns JSON responses.

"""
Order API Routes

DESIGN:
- Thin handlers: parse JSON, call OrderService / PaymentService, serialize
- Business-rule violations come back as OrderFlowError and are answered with
  their own status and machine code
- Unexpected failures are logged and answered with a generic 500
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services.errors import OrderFlowError, ValidationFailed
from ..services.registry import get_services


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _error_response(e: OrderFlowError):
    return jsonify(e.to_dict()), e.http_status


def _int_arg(name: str, default: int, maximum: int | None = None) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationFailed(f"{name} must be an integer", details={"field": name})
    if value < 0:
        raise ValidationFailed(f"{name} must be >= 0", details={"field": name})
    if maximum is not None:
        value = min(value, maximum)
    return value


# =============================================================================
# ORDER INTAKE
# =============================================================================

@orders_bp.post("")
@require_actor
def create_order_route():
    """
    Create an order (status PENDING_PAYMENT, stock untouched).

    Request body:
    {
        "order_number": "ORD-...",          (optional, generated when omitted)
        "order_type": "DINE_IN" | "TAKEAWAY" | "DELIVERY",
        "order_source": "CASHIER",          (optional)
        "table_number": "12",               (DINE_IN)
        "customer_name": "...", "customer_phone": "...",  (DELIVERY)
        "items": [{"product_id": 1, "quantity": 2, "unit_price_cents": 10000}],
        "discount_cents": 0, "tax_cents": 0, "service_charge_cents": 0,
        "delivery_fee_cents": 0, "total_cents": 25000
    }

    Returns:
        201: Order created
        400: Invalid input
        404: Product not found
        409: Duplicate order number / insufficient stock
    """
    try:
        data = request.get_json(silent=True) or {}
        order = get_services().orders.create_order(data, user_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 201
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDER QUERIES
# =============================================================================

@orders_bp.get("")
def list_orders_route():
    try:
        orders = get_services().orders.list_orders(
            status=request.args.get("status") or None,
            payment_status=request.args.get("payment_status") or None,
            limit=_int_arg("limit", 50, maximum=200),
            offset=_int_arg("offset", 0),
        )
        return jsonify({"orders": [o.to_dict(include_items=False) for o in orders]}), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        services = get_services()
        order = services.orders.get_order(order_id)
        payments = services.payments.list_payments(order.id)
        return jsonify({
            "order": order.to_dict(),
            "payments": [p.to_dict() for p in payments],
        }), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# STATUS CHANGES
# =============================================================================

@orders_bp.patch("/<int:order_id>/status")
@require_actor
def update_status_route(order_id: int):
    """
    Request body: {"status": "PREPARING", "reason": "..."}

    PAID cannot be set here; use confirm-payment or the gateway flow.
    """
    try:
        data = request.get_json(silent=True) or {}
        status = data.get("status")
        if not status:
            return jsonify({"error": "status is required", "code": "VALIDATION_FAILED", "details": {}}), 400

        order = get_services().orders.update_status(
            order_id,
            status,
            reason=data.get("reason"),
            user_id=g.actor_id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_order_route(order_id: int):
    """Cancel an order. Settled orders get their stock restored. Re-cancel is a no-op."""
    try:
        data = request.get_json(silent=True) or {}
        order = get_services().orders.cancel_order(order_id, reason=data.get("reason"), user_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
@require_actor
def delete_order_route(order_id: int):
    """Soft-delete an order (hidden from listings and stock logic)."""
    try:
        order = get_services().orders.soft_delete_order(order_id)
        return jsonify({"order_id": order.id, "deleted": True}), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CASH CONFIRMATION
# =============================================================================

@orders_bp.post("/<int:order_id>/confirm-payment")
@require_actor
def confirm_payment_route(order_id: int):
    """
    Confirm a cashier-verified payment.

    Request body:
    {
        "paid_cents": 30000,
        "change_cents": 5000,        (optional, defaults to paid - total)
        "payment_method": "CASH",    (optional)
        "notes": "..."               (optional)
    }

    Returns:
        200: Order PAID, payment recorded, stock decremented
        400: Insufficient payment / invalid input
        409: Already settled / not settleable / insufficient stock
    """
    try:
        data = request.get_json(silent=True) or {}
        order, payment = get_services().payments.confirm_payment(
            order_id,
            data.get("paid_cents"),
            change_cents=data.get("change_cents"),
            payment_method=data.get("payment_method"),
            user_id=g.actor_id,
            notes=data.get("notes"),
        )
        return jsonify({"order": order.to_dict(), "payment": payment.to_dict()}), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm payment")
        return jsonify({"error": "Internal server error"}), 500
