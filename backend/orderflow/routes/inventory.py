# Overview: Flask API routes for manual stock movements and the inventory ledger; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..services import inventory_service
from ..services.errors import OrderFlowError
from ..services.registry import get_services


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("/adjust")
@require_actor
def adjust_stock_route():
    """
    Record a manual stock movement.

    Request body:
    {
        "product_id": 1,
        "type": "IN" | "OUT" | "DAMAGE" | "RETURN" | "ADJUSTMENT" | "STOCK_TAKE",
        "quantity": 5,        (new absolute count for ADJUSTMENT / STOCK_TAKE)
        "reason": "..."
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        product_id = data.get("product_id")
        movement_type = data.get("type")
        quantity = data.get("quantity")
        if product_id is None or movement_type is None or quantity is None:
            return jsonify({
                "error": "product_id, type, and quantity required",
                "code": "VALIDATION_FAILED",
                "details": {},
            }), 400

        log = inventory_service.adjust_stock(
            product_id,
            movement_type,
            quantity,
            reason=data.get("reason"),
            user_id=g.actor_id,
            notifier=get_services().notifier,
        )
        return jsonify({"log": log.to_dict()}), 201
    except OrderFlowError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:product_id>/logs")
def list_logs_route(product_id: int):
    try:
        limit = min(request.args.get("limit", 50, type=int), 200)
        offset = max(request.args.get("offset", 0, type=int), 0)
        logs = inventory_service.list_logs(product_id, limit=limit, offset=offset)
        return jsonify({"logs": [log.to_dict() for log in logs]}), 200
    except OrderFlowError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list inventory logs")
        return jsonify({"error": "Internal server error"}), 500
