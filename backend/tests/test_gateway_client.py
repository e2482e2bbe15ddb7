"""
Gateway adapter tests: pure mapping helpers and the httpx client.
"""

import hashlib
import json

import httpx
import pytest

from orderflow.services.errors import (
    DuplicateTransaction,
    GatewayAuthError,
    GatewayTransactionNotFound,
    GatewayUnavailable,
)
from orderflow.services.gateway_client import (
    SnapGatewayClient,
    build_transaction_params,
    map_payment_type,
    map_transaction_status,
    to_gateway_amount,
    validate_customer_details,
    verify_signature,
)


SERVER_KEY = "SB-Mid-server-abc"


def _signature(order_id, status_code, gross_amount, key=SERVER_KEY):
    return hashlib.sha512(f"{order_id}{status_code}{gross_amount}{key}".encode()).hexdigest()


class TestSignature:
    def test_valid_signature(self):
        sig = _signature("ORD-1", "200", "25000.00")
        assert verify_signature("ORD-1", "200", "25000.00", sig, SERVER_KEY)

    def test_tampered_amount_fails(self):
        sig = _signature("ORD-1", "200", "25000.00")
        assert not verify_signature("ORD-1", "200", "1.00", sig, SERVER_KEY)

    def test_missing_key_fails(self):
        assert not verify_signature("ORD-1", "200", "25000.00", "", SERVER_KEY)
        assert not verify_signature("ORD-1", "200", "25000.00", "abc", "")


class TestStatusMapping:
    @pytest.mark.parametrize("transaction_status, fraud_status, expected", [
        ("settlement", None, ("PAID", "COMPLETED")),
        ("capture", "accept", ("PAID", "COMPLETED")),
        ("capture", "challenge", ("AWAITING_CONFIRMATION", "PROCESSING")),
        ("capture", "deny", ("CANCELLED", "FAILED")),
        ("pending", None, ("PENDING_PAYMENT", "PENDING")),
        ("deny", None, ("CANCELLED", "FAILED")),
        ("cancel", None, ("CANCELLED", "FAILED")),
        ("expire", None, ("CANCELLED", "EXPIRED")),
        ("refund", None, ("REFUNDED", "REFUNDED")),
        ("authorize", None, None),
    ])
    def test_mapping(self, transaction_status, fraud_status, expected):
        assert map_transaction_status(transaction_status, fraud_status) == expected

    @pytest.mark.parametrize("payment_type, expected", [
        ("qris", "QRIS"),
        ("gopay", "E_WALLET"),
        ("shopeepay", "E_WALLET"),
        ("bca_va", "BANK_TRANSFER"),
        ("echannel", "BANK_TRANSFER"),
        ("bank_transfer", "BANK_TRANSFER"),
        ("credit_card", "CREDIT_CARD"),
        ("debit_card", "DEBIT_CARD"),
        ("cstore", "OTHER"),
        (None, "OTHER"),
    ])
    def test_payment_types(self, payment_type, expected):
        assert map_payment_type(payment_type) == expected


class TestRequestBuilding:
    def test_amount_rounds_half_up(self):
        assert to_gateway_amount(2500000) == 25000
        assert to_gateway_amount(150) == 2
        assert to_gateway_amount(149) == 1

    def test_customer_fields_are_validated_independently(self):
        details = validate_customer_details({
            "first_name": "A" * 60,
            "last_name": "   ",
            "email": "not-an-email",
            "phone": "  +62 812 3456 7890 1234  ",
        })
        assert details == {"first_name": "A" * 50, "phone": "+62 812 3456 7890 1"}

    def test_customer_defaults(self):
        assert validate_customer_details(None) == {"first_name": "Customer"}
        details = validate_customer_details({"first_name": "Sari", "last_name": "Dewi", "email": " sari@example.com "})
        assert details == {"first_name": "Sari", "last_name": "Dewi", "email": "sari@example.com"}

    def test_params_from_order(self, services, make_product, make_order, category):
        long_name = "Nasi Goreng Spesial Dengan Telur Mata Sapi dan Kerupuk Udang"
        p1 = make_product(name=long_name, price_cents=2500000, category=category)
        p2 = make_product(price_cents=1000000)
        order = make_order([(p1, 2), (p2, 1)], tax_cents=600000, customer_name="Budi", customer_email="budi@example.com")

        params = build_transaction_params(order, "ORD-X-R1", expiry_minutes=10, app_url="https://shop.example/")

        assert params["transaction_details"] == {"order_id": "ORD-X-R1", "gross_amount": 66000}
        items = params["item_details"]
        assert items[0] == {
            "id": str(p1.id),
            "price": 25000,
            "quantity": 2,
            "name": long_name[:50],
            "category": "Drinks",
        }
        assert items[1]["category"] == "General"
        assert items[-1]["id"] == "ADJUSTMENT"
        assert items[-1]["price"] == 6000
        assert sum(i["price"] * i["quantity"] for i in items) == 66000
        assert params["customer_details"] == {"first_name": "Budi", "email": "budi@example.com"}
        assert params["expiry"] == {"unit": "minute", "duration": 10}
        assert params["callbacks"]["finish"] == f"https://shop.example/orders/{order.id}?payment=success"


def _client(handler):
    return SnapGatewayClient(SERVER_KEY, transport=httpx.MockTransport(handler))


class TestSnapGatewayClient:
    def test_create_transaction(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"token": "abc", "redirect_url": "https://pay/abc"})

        result = _client(handler).create_transaction({"transaction_details": {"order_id": "ORD-1"}})

        assert result == {"token": "abc", "redirect_url": "https://pay/abc"}
        assert seen["url"] == "https://app.sandbox.midtrans.com/snap/v1/transactions"
        assert seen["auth"].startswith("Basic ")
        assert seen["body"]["transaction_details"]["order_id"] == "ORD-1"

    def test_auth_failure(self):
        client = _client(lambda request: httpx.Response(401, json={"error_messages": ["Access denied"]}))
        with pytest.raises(GatewayAuthError):
            client.create_transaction({})

    def test_duplicate_order_id(self):
        body = {"error_messages": ["transaction_details.order_id has already been taken"]}
        client = _client(lambda request: httpx.Response(400, json=body))
        with pytest.raises(DuplicateTransaction):
            client.create_transaction({})

    def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayUnavailable):
            _client(handler).get_status("ORD-1")

    def test_connection_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GatewayUnavailable):
            _client(handler).create_transaction({})

    def test_status_not_found_in_body(self):
        body = {"status_code": "404", "status_message": "Transaction doesn't exist."}
        client = _client(lambda request: httpx.Response(200, json=body))
        with pytest.raises(GatewayTransactionNotFound):
            client.get_status("ORD-1")

    def test_status_for_expired_transaction(self):
        body = {"status_code": "407", "transaction_status": "expire", "order_id": "ORD-1"}

        def handler(request):
            assert str(request.url) == "https://api.sandbox.midtrans.com/v2/ORD-1/status"
            return httpx.Response(200, json=body)

        assert _client(handler).get_status("ORD-1")["transaction_status"] == "expire"

    def test_server_error_is_unavailable(self):
        client = _client(lambda request: httpx.Response(503, json={}))
        with pytest.raises(GatewayUnavailable):
            client.get_status("ORD-1")

    def test_cancel(self):
        def handler(request):
            assert request.method == "POST"
            assert str(request.url) == "https://api.sandbox.midtrans.com/v2/ORD-1-R2/cancel"
            return httpx.Response(200, json={"status_code": "200", "transaction_status": "cancel"})

        assert _client(handler).cancel("ORD-1-R2")["transaction_status"] == "cancel"
