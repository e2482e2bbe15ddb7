# backend/orderflow/routes/system.py
"""
System health endpoint.

Reports database connectivity and the size of the payment backlog the expiry
sweeper is responsible for.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import Order
from ..services.order_service import PAYMENT_STATUS_PENDING, STATUS_PENDING_PAYMENT
from orderflow.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """Check database connectivity with a basic query."""
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        pending_count = db.session.query(Order).filter(
            Order.status == STATUS_PENDING_PAYMENT,
            Order.payment_status == PAYMENT_STATUS_PENDING,
            Order.deleted_at.is_(None),
        ).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "pending_payments": pending_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: Database reachable
    - 503: Database unhealthy
    """
    database_health = check_database_health()
    http_status = 200 if database_health["status"] == "healthy" else 503
    response = {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {
            "database": database_health,
        }
    }
    return response, http_status
