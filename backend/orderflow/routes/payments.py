# Overview: Flask API routes for hosted-gateway payments; parses input and returns JSON responses.

"""
Gateway Payment API Routes

WHY: Orders paid through the hosted payment page settle asynchronously.
These routes issue tokens, retry failed or expired attempts, poll status,
receive signed gateway notifications and trigger the expiry sweep.

DESIGN:
- Notification endpoint is unauthenticated; trust comes from the signature
- expire-pending is called by an external scheduler with CRON_SECRET
- GatewayUnavailable (timeout) answers 503 and leaves the order untouched
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_actor, require_cron_secret
from ..services.errors import OrderFlowError
from ..services.registry import get_services


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _error_response(e: OrderFlowError):
    return jsonify(e.to_dict()), e.http_status


# =============================================================================
# TOKEN ISSUANCE & RETRY
# =============================================================================

@payments_bp.post("/<int:order_id>/gateway")
@require_actor
def create_gateway_transaction_route(order_id: int):
    """
    Issue a payment token (an unexpired existing token is reused).

    Request body (optional):
    {"customer_details": {"first_name": "...", "email": "...", "phone": "..."}}
    """
    try:
        data = request.get_json(silent=True) or {}
        result = get_services().gateway_payments.create_gateway_transaction(
            order_id,
            customer_details=data.get("customer_details"),
        )
        return jsonify(result), 200 if result["reused"] else 201
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create gateway transaction")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:order_id>/retry")
@require_actor
def retry_gateway_transaction_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        result = get_services().gateway_payments.retry_gateway_transaction(
            order_id,
            customer_details=data.get("customer_details"),
        )
        return jsonify(result), 201
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to retry gateway transaction")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:order_id>/retry")
def get_retry_info_route(order_id: int):
    try:
        return jsonify(get_services().gateway_payments.get_retry_info(order_id)), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get retry info")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# STATUS RESOLUTION
# =============================================================================

@payments_bp.get("/<int:order_id>/status")
def check_status_route(order_id: int):
    try:
        return jsonify(get_services().gateway_payments.check_gateway_status(order_id)), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to check payment status")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:order_id>/cancel")
@require_actor
def cancel_gateway_transaction_route(order_id: int):
    """Cancel the open gateway payment; answers with the resolved order state."""
    try:
        return jsonify(get_services().gateway_payments.cancel_gateway_transaction(order_id)), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel gateway transaction")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/notification")
def notification_route():
    """
    Gateway webhook.

    Returns:
        200: Notification applied (or already applied)
        400: Missing fields
        403: Invalid signature
        404: Unknown order
    """
    try:
        payload = request.get_json(silent=True) or {}
        result = get_services().gateway_payments.handle_notification(payload)
        return jsonify({"success": True, **result}), 200
    except OrderFlowError as e:
        return _error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process payment notification")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# EXPIRY SWEEP
# =============================================================================

@payments_bp.post("/expire-pending")
@require_cron_secret
def expire_pending_route():
    try:
        result = get_services().sweeper.run()
        return jsonify(result.to_dict()), 200
    except Exception:
        current_app.logger.exception("Failed to expire pending payments")
        return jsonify({"error": "Internal server error"}), 500
