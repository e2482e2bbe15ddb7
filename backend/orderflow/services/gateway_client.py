"""
Payment gateway adapter (Snap-style hosted payment page).

WHY: Keeps every gateway-specific detail in one place: endpoints, auth,
request shape, status vocabulary and webhook signatures. Services only see
internal statuses and the error kinds from errors.py.

HTTP:
- create_transaction: POST <snap>/transactions -> {token, redirect_url}
- get_status:         GET  <api>/v2/<gateway order id>/status
- cancel:             POST <api>/v2/<gateway order id>/cancel
Auth is HTTP Basic with the server key as username and an empty password.
Timeouts and connection errors raise GatewayUnavailable: the outcome is
unknown and callers must not mutate state.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import httpx

from .errors import (
    DuplicateTransaction,
    GatewayAuthError,
    GatewayError,
    GatewayTransactionNotFound,
    GatewayUnavailable,
)

logger = logging.getLogger(__name__)

GATEWAY_NAME = "midtrans"

SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1"
PRODUCTION_SNAP_URL = "https://app.midtrans.com/snap/v1"
SANDBOX_API_URL = "https://api.sandbox.midtrans.com/v2"
PRODUCTION_API_URL = "https://api.midtrans.com/v2"

ITEM_NAME_LIMIT = 50
FIRST_NAME_LIMIT = 50
LAST_NAME_LIMIT = 50
EMAIL_LIMIT = 80
PHONE_LIMIT = 19
DEFAULT_CATEGORY = "General"
DEFAULT_FIRST_NAME = "Customer"

ENABLED_PAYMENTS = [
    "gopay",
    "shopeepay",
    "qris",
    "bca_va",
    "bni_va",
    "bri_va",
    "permata_va",
    "credit_card",
]

PAYMENT_TYPE_MAP = {
    "qris": "QRIS",
    "gopay": "E_WALLET",
    "shopeepay": "E_WALLET",
    "bank_transfer": "BANK_TRANSFER",
    "bca_va": "BANK_TRANSFER",
    "bni_va": "BANK_TRANSFER",
    "bri_va": "BANK_TRANSFER",
    "permata_va": "BANK_TRANSFER",
    "echannel": "BANK_TRANSFER",
    "credit_card": "CREDIT_CARD",
    "debit_card": "DEBIT_CARD",
}


# =============================================================================
# PURE HELPERS
# =============================================================================

def to_gateway_amount(cents: int) -> int:
    """Minor units -> whole currency units, rounding half up."""
    return (int(cents) + 50) // 100


def verify_signature(order_id: str, status_code: str, gross_amount: str, signature_key: str, server_key: str) -> bool:
    """Check a notification signature: sha512(order_id + status_code + gross_amount + server_key)."""
    if not signature_key or not server_key:
        return False
    raw = f"{order_id}{status_code}{gross_amount}{server_key}".encode("utf-8")
    expected = hashlib.sha512(raw).hexdigest()
    return hmac.compare_digest(expected, str(signature_key).lower())


def map_transaction_status(transaction_status: str | None, fraud_status: str | None = None) -> tuple[str, str] | None:
    """
    Gateway transaction status -> (order status, payment status).

    Returns None for statuses with no internal meaning (e.g. "authorize").
    """
    if transaction_status in ("capture", "settlement"):
        if transaction_status == "capture" and fraud_status == "challenge":
            return "AWAITING_CONFIRMATION", "PROCESSING"
        if fraud_status in (None, "", "accept"):
            return "PAID", "COMPLETED"
        # deny on capture
        return "CANCELLED", "FAILED"
    if transaction_status == "pending":
        return "PENDING_PAYMENT", "PENDING"
    if transaction_status in ("deny", "cancel"):
        return "CANCELLED", "FAILED"
    if transaction_status == "expire":
        return "CANCELLED", "EXPIRED"
    if transaction_status in ("refund", "partial_refund"):
        return "REFUNDED", "REFUNDED"
    return None


def map_payment_type(payment_type: str | None) -> str:
    return PAYMENT_TYPE_MAP.get((payment_type or "").lower(), "OTHER")


def validate_customer_details(details: dict | None) -> dict:
    """
    Trim customer contact fields to gateway limits.

    Each optional field is kept only if it is well-formed; a malformed field is
    dropped instead of failing the whole request.
    """
    details = details or {}
    first_name = (details.get("first_name") or "").strip()
    result: dict[str, str] = {"first_name": first_name[:FIRST_NAME_LIMIT] or DEFAULT_FIRST_NAME}

    last_name = details.get("last_name")
    if isinstance(last_name, str) and last_name.strip():
        result["last_name"] = last_name.strip()[:LAST_NAME_LIMIT]

    email = details.get("email")
    if isinstance(email, str) and email.strip() and "@" in email:
        result["email"] = email.strip()[:EMAIL_LIMIT]

    phone = details.get("phone")
    if isinstance(phone, str) and phone.strip():
        result["phone"] = phone.strip()[:PHONE_LIMIT]

    return result


def build_transaction_params(
    order,
    gateway_order_id: str,
    *,
    customer_details: dict | None = None,
    expiry_minutes: int = 10,
    app_url: str | None = None,
) -> dict[str, Any]:
    """
    Translate an order into a transaction-creation request.

    Item prices are whole currency units; when order-level charges, discounts
    or rounding make the items differ from the gross amount, one adjustment
    line balances them.
    """
    gross_amount = to_gateway_amount(order.total_cents)

    items = []
    for item in order.items:
        category = None
        if item.product is not None and item.product.category is not None:
            category = item.product.category.name
        items.append({
            "id": str(item.product_id),
            "price": to_gateway_amount(item.unit_price_cents),
            "quantity": item.quantity,
            "name": (item.product_name or "")[:ITEM_NAME_LIMIT],
            "category": category or DEFAULT_CATEGORY,
        })

    items_total = sum(i["price"] * i["quantity"] for i in items)
    if items_total != gross_amount:
        items.append({
            "id": "ADJUSTMENT",
            "price": gross_amount - items_total,
            "quantity": 1,
            "name": "Tax, fees and discounts",
            "category": DEFAULT_CATEGORY,
        })

    if customer_details is None:
        customer_details = {
            "first_name": order.customer_name,
            "email": order.customer_email,
            "phone": order.customer_phone,
        }

    params: dict[str, Any] = {
        "transaction_details": {
            "order_id": gateway_order_id,
            "gross_amount": gross_amount,
        },
        "item_details": items,
        "customer_details": validate_customer_details(customer_details),
        "enabled_payments": list(ENABLED_PAYMENTS),
        "expiry": {"unit": "minute", "duration": expiry_minutes},
    }
    if app_url:
        base = app_url.rstrip("/")
        params["callbacks"] = {
            "finish": f"{base}/orders/{order.id}?payment=success",
            "error": f"{base}/orders/{order.id}?payment=error",
            "pending": f"{base}/orders/{order.id}?payment=pending",
        }
    return params


def redirect_url_for(token: str, *, is_production: bool = False) -> str:
    host = "app.midtrans.com" if is_production else "app.sandbox.midtrans.com"
    return f"https://{host}/snap/v3/redirection/{token}"


# =============================================================================
# HTTP CLIENT
# =============================================================================

class SnapGatewayClient:
    """Blocking httpx client for the hosted-payment gateway."""

    name = GATEWAY_NAME

    def __init__(
        self,
        server_key: str,
        *,
        is_production: bool = False,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_key = server_key
        self.is_production = is_production
        self.snap_url = PRODUCTION_SNAP_URL if is_production else SANDBOX_SNAP_URL
        self.api_url = PRODUCTION_API_URL if is_production else SANDBOX_API_URL
        self._client = httpx.Client(
            auth=(server_key or "", ""),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": "orderflow/1.0",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def redirect_url(self, token: str) -> str:
        return redirect_url_for(token, is_production=self.is_production)

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Gateway request timed out: %s %s", method, url)
            raise GatewayUnavailable("Payment gateway timed out", details={"url": url}) from exc
        except httpx.TransportError as exc:
            logger.warning("Gateway unreachable: %s %s (%s)", method, url, exc)
            raise GatewayUnavailable("Payment gateway unreachable", details={"url": url}) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"body": body}

        if response.status_code < 400 and "transaction_status" in body:
            return body

        # The status API reports errors in-body with HTTP 200.
        status_code = str(body.get("status_code") or response.status_code)
        messages = body.get("error_messages") or ([body["status_message"]] if body.get("status_message") else [])

        if response.status_code == 401 or status_code == "401":
            raise GatewayAuthError("Payment gateway rejected credentials", details={"messages": messages})
        if response.status_code == 404 or status_code == "404":
            raise GatewayTransactionNotFound("Transaction not found at gateway", details={"messages": messages})
        if response.status_code >= 400 or (status_code.isdigit() and int(status_code) >= 400):
            if any("already been taken" in str(m) or "already used" in str(m) for m in messages):
                raise DuplicateTransaction("Gateway order id already used", details={"messages": messages})
            if response.status_code >= 500 or status_code.startswith("5"):
                raise GatewayUnavailable("Payment gateway error", details={"status_code": status_code, "messages": messages})
            raise GatewayError("Payment gateway rejected the request", details={"status_code": status_code, "messages": messages})
        return body

    def create_transaction(self, params: dict) -> dict:
        body = self._request("POST", f"{self.snap_url}/transactions", json=params)
        token = body.get("token")
        if not token:
            raise GatewayError("Gateway response did not include a token", details={"response": body})
        return {"token": token, "redirect_url": body.get("redirect_url") or self.redirect_url(token)}

    def get_status(self, gateway_order_id: str) -> dict:
        return self._request("GET", f"{self.api_url}/{gateway_order_id}/status")

    def cancel(self, gateway_order_id: str) -> dict:
        return self._request("POST", f"{self.api_url}/{gateway_order_id}/cancel")
