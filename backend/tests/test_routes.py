"""
HTTP surface: status codes, error bodies and header requirements.
"""

import hashlib

from orderflow.config import TestConfig
from orderflow.services.errors import GatewayUnavailable


def _order_body(*lines, **extra):
    body = {
        "order_type": "TAKEAWAY",
        "items": [
            {"product_id": product.id, "quantity": qty, "unit_price_cents": product.price_cents}
            for product, qty in lines
        ],
    }
    body.update(extra)
    return body


def _signature(order_id, status_code, gross_amount):
    raw = f"{order_id}{status_code}{gross_amount}{TestConfig.GATEWAY_SERVER_KEY}"
    return hashlib.sha512(raw.encode()).hexdigest()


class TestSystemRoutes:
    def test_health(self, client, db_session):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["details"]["orders"] == 0

    def test_cors_for_known_origin(self, client, db_session):
        response = client.get("/api/health", headers={"Origin": "http://localhost:5173"})
        assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
        assert "X-Actor-Id" in response.headers["Access-Control-Allow-Headers"]


class TestOrderRoutes:
    def test_create_requires_actor(self, client, make_product):
        product = make_product()

        response = client.post("/api/orders", json=_order_body((product, 1)))

        assert response.status_code == 401
        assert response.get_json()["code"] == "ACTOR_REQUIRED"

    def test_non_numeric_actor_rejected(self, client, make_product):
        product = make_product()
        response = client.post("/api/orders", json=_order_body((product, 1)), headers={"X-Actor-Id": "alice"})
        assert response.status_code == 401

    def test_create_and_fetch(self, client, make_product, actor_headers, services):
        product = make_product(price_cents=12500)

        created = client.post(
            "/api/orders",
            json=_order_body((product, 2), order_number="ORD-20261018-0001"),
            headers=actor_headers,
        )

        assert created.status_code == 201
        order = created.get_json()["order"]
        assert order["order_number"] == "ORD-20261018-0001"
        assert order["status"] == "PENDING_PAYMENT"
        assert order["total_cents"] == 25000
        assert order["items"][0]["product_sku"] == product.sku

        fetched = client.get(f"/api/orders/{order['id']}")
        assert fetched.status_code == 200
        assert fetched.get_json()["payments"] == []

    def test_validation_error_body(self, client, db_session, actor_headers):
        response = client.post("/api/orders", json={"order_type": "TAKEAWAY", "items": []}, headers=actor_headers)

        assert response.status_code == 400
        assert set(response.get_json()) == {"error", "code", "details"}
        assert response.get_json()["code"] == "VALIDATION_FAILED"

    def test_duplicate_order_number(self, client, make_product, actor_headers):
        product = make_product()
        body = _order_body((product, 1), order_number="ORD-DUP")

        assert client.post("/api/orders", json=body, headers=actor_headers).status_code == 201
        response = client.post("/api/orders", json=body, headers=actor_headers)

        assert response.status_code == 409
        assert response.get_json()["code"] == "DUPLICATE_ORDER_NUMBER"

    def test_unknown_order(self, client, db_session):
        response = client.get("/api/orders/9999")
        assert response.status_code == 404
        assert response.get_json()["code"] == "NOT_FOUND"

    def test_list_filters_by_status(self, client, make_product, make_order, actor_headers):
        product = make_product()
        paid = make_order([(product, 1)])
        make_order([(product, 1)])
        client.post(f"/api/orders/{paid.id}/confirm-payment", json={"paid_cents": paid.total_cents}, headers=actor_headers)

        response = client.get("/api/orders?status=PAID")

        assert response.status_code == 200
        assert [o["id"] for o in response.get_json()["orders"]] == [paid.id]

    def test_bad_pagination(self, client, db_session):
        response = client.get("/api/orders?limit=abc")
        assert response.status_code == 400

    def test_confirm_payment_flow(self, client, two_item_order, actor_headers):
        order, p1, _ = two_item_order

        response = client.post(
            f"/api/orders/{order.id}/confirm-payment",
            json={"paid_cents": 30000},
            headers=actor_headers,
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data["order"]["status"] == "PAID"
        assert data["order"]["change_cents"] == 5000
        assert data["payment"]["status"] == "COMPLETED"
        assert data["payment"]["verified_by_user_id"] == 7

        again = client.post(
            f"/api/orders/{order.id}/confirm-payment",
            json={"paid_cents": 30000},
            headers=actor_headers,
        )
        assert again.status_code == 409
        assert again.get_json()["code"] == "ORDER_ALREADY_SETTLED"

        logs = client.get(f"/api/inventory/{p1.id}/logs").get_json()["logs"]
        assert logs[0]["type"] == "OUT"
        assert logs[0]["current_stock"] == 8

    def test_insufficient_payment(self, client, two_item_order, actor_headers):
        order, _, _ = two_item_order

        response = client.post(
            f"/api/orders/{order.id}/confirm-payment",
            json={"paid_cents": 20000},
            headers=actor_headers,
        )

        assert response.status_code == 400
        body = response.get_json()
        assert body["code"] == "INSUFFICIENT_PAYMENT"
        assert body["details"]["shortage_cents"] == 5000

    def test_status_changes(self, client, two_item_order, actor_headers):
        order, _, _ = two_item_order

        forced = client.patch(f"/api/orders/{order.id}/status", json={"status": "PAID"}, headers=actor_headers)
        assert forced.status_code == 409
        assert forced.get_json()["code"] == "INVALID_TRANSITION"

        client.post(f"/api/orders/{order.id}/confirm-payment", json={"paid_cents": 25000}, headers=actor_headers)
        preparing = client.patch(f"/api/orders/{order.id}/status", json={"status": "PREPARING"}, headers=actor_headers)

        assert preparing.status_code == 200
        assert preparing.get_json()["order"]["preparing_at"] is not None

        missing = client.patch(f"/api/orders/{order.id}/status", json={}, headers=actor_headers)
        assert missing.status_code == 400

    def test_cancel_and_delete(self, client, two_item_order, actor_headers):
        order, _, _ = two_item_order

        cancelled = client.post(f"/api/orders/{order.id}/cancel", json={"reason": "Customer left"}, headers=actor_headers)
        assert cancelled.status_code == 200
        assert cancelled.get_json()["order"]["cancellation_reason"] == "Customer left"

        deleted = client.delete(f"/api/orders/{order.id}", headers=actor_headers)
        assert deleted.status_code == 200
        assert client.get(f"/api/orders/{order.id}").status_code == 404


class TestPaymentRoutes:
    def test_token_issue_and_reuse(self, client, two_item_order, actor_headers):
        order, _, _ = two_item_order

        first = client.post(f"/api/payments/{order.id}/gateway", json={}, headers=actor_headers)
        second = client.post(f"/api/payments/{order.id}/gateway", json={}, headers=actor_headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.get_json()["token"] == second.get_json()["token"]
        assert first.get_json()["expires_at"].endswith("Z")

    def test_retry_and_info(self, client, two_item_order, actor_headers):
        order, _, _ = two_item_order
        client.post(f"/api/payments/{order.id}/gateway", json={}, headers=actor_headers)

        retried = client.post(f"/api/payments/{order.id}/retry", json={}, headers=actor_headers)
        info = client.get(f"/api/payments/{order.id}/retry")

        assert retried.status_code == 201
        assert retried.get_json()["gateway_order_id"].endswith("-R1")
        assert info.get_json()["retry_count"] == 1

    def test_status_unavailable(self, client, two_item_order, actor_headers, gateway):
        order, _, _ = two_item_order
        client.post(f"/api/payments/{order.id}/gateway", json={}, headers=actor_headers)
        gateway.status_error = GatewayUnavailable("Payment gateway timed out")

        response = client.get(f"/api/payments/{order.id}/status")

        assert response.status_code == 503
        assert response.get_json()["code"] == "GATEWAY_UNAVAILABLE"

    def test_status_settles(self, client, two_item_order, actor_headers, gateway):
        order, _, _ = two_item_order
        client.post(f"/api/payments/{order.id}/gateway", json={}, headers=actor_headers)
        gateway.set_status(order.order_number, "settlement", total_cents=order.total_cents)

        response = client.get(f"/api/payments/{order.id}/status")

        assert response.status_code == 200
        assert response.get_json()["settled"] is True
        assert response.get_json()["order"]["status"] == "PAID"

    def test_notification_signature(self, client, two_item_order, actor_headers, gateway):
        order, _, _ = two_item_order
        client.post(f"/api/payments/{order.id}/gateway", json={}, headers=actor_headers)
        gateway.set_status(order.order_number, "settlement", total_cents=order.total_cents)
        payload = {
            "order_id": order.order_number,
            "status_code": "200",
            "gross_amount": "250.00",
            "transaction_status": "settlement",
            "signature_key": "forged",
        }

        rejected = client.post("/api/payments/notification", json=payload)
        assert rejected.status_code == 403
        assert rejected.get_json()["code"] == "INVALID_SIGNATURE"

        payload["signature_key"] = _signature(order.order_number, "200", "250.00")
        accepted = client.post("/api/payments/notification", json=payload)

        assert accepted.status_code == 200
        assert accepted.get_json()["success"] is True
        assert accepted.get_json()["settled"] is True

    def test_cancel_gateway_payment(self, client, two_item_order, actor_headers, gateway):
        order, _, _ = two_item_order
        client.post(f"/api/payments/{order.id}/gateway", json={}, headers=actor_headers)
        gateway.set_status(order.order_number, "pending", total_cents=order.total_cents)

        response = client.post(f"/api/payments/{order.id}/cancel", headers=actor_headers)
        again = client.post(f"/api/payments/{order.id}/cancel", headers=actor_headers)

        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "CANCELLED"
        assert again.status_code == 409
        assert again.get_json()["code"] == "ORDER_CANCELLED"

    def test_expire_pending_requires_secret(self, client, db_session):
        assert client.post("/api/payments/expire-pending").status_code == 401
        assert client.post(
            "/api/payments/expire-pending", headers={"Authorization": "Bearer wrong"}
        ).status_code == 401

    def test_expire_pending(self, client, services):
        response = client.post(
            "/api/payments/expire-pending",
            headers={"Authorization": "Bearer test-cron-secret"},
        )

        assert response.status_code == 200
        assert response.get_json() == {"checked": 0, "expired_count": 0, "expired": [], "failed": []}


class TestInventoryRoutes:
    def test_adjust(self, client, make_product, actor_headers):
        product = make_product(quantity=10)

        response = client.post(
            "/api/inventory/adjust",
            json={"product_id": product.id, "type": "DAMAGE", "quantity": 2, "reason": "Dropped"},
            headers=actor_headers,
        )

        assert response.status_code == 201
        log = response.get_json()["log"]
        assert (log["previous_stock"], log["current_stock"], log["user_id"]) == (10, 8, 7)

    def test_adjust_validation(self, client, make_product, actor_headers):
        product = make_product(quantity=1)

        missing = client.post("/api/inventory/adjust", json={"product_id": product.id}, headers=actor_headers)
        oversold = client.post(
            "/api/inventory/adjust",
            json={"product_id": product.id, "type": "OUT", "quantity": 5},
            headers=actor_headers,
        )

        assert missing.status_code == 400
        assert oversold.status_code == 409
        assert oversold.get_json()["code"] == "INSUFFICIENT_STOCK"

    def test_logs_for_unknown_product(self, client, db_session):
        assert client.get("/api/inventory/999/logs").status_code == 404
