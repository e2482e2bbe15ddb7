"""
Error kinds raised by the order pipeline.

WHY: Callers (route handlers, CLI) map each kind to a response without parsing
messages. Every error carries a machine `code`, an `http_status`, and a
`details` dict with the context needed for that mapping (shortage amount,
current status, retry counts).
"""

from __future__ import annotations


class OrderFlowError(Exception):
    """Base class for business-rule violations."""
    code = "ORDER_FLOW_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationFailed(OrderFlowError):
    code = "VALIDATION_FAILED"
    http_status = 400


class InsufficientStock(ValidationFailed):
    code = "INSUFFICIENT_STOCK"
    http_status = 409


class NotFound(OrderFlowError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidTransition(OrderFlowError):
    code = "INVALID_TRANSITION"
    http_status = 409


class OrderAlreadySettled(InvalidTransition):
    code = "ORDER_ALREADY_SETTLED"


class OrderNotSettleable(InvalidTransition):
    code = "ORDER_NOT_SETTLEABLE"


class AlreadyPaid(InvalidTransition):
    code = "ALREADY_PAID"


class OrderCancelled(InvalidTransition):
    code = "ORDER_CANCELLED"


class InsufficientPayment(OrderFlowError):
    code = "INSUFFICIENT_PAYMENT"
    http_status = 400


class DuplicateOrderNumber(OrderFlowError):
    code = "DUPLICATE_ORDER_NUMBER"
    http_status = 409


class DuplicateTransaction(OrderFlowError):
    code = "DUPLICATE_TRANSACTION"
    http_status = 409


class MaxRetriesExceeded(OrderFlowError):
    code = "MAX_RETRIES_EXCEEDED"
    http_status = 400


class TokenExpired(OrderFlowError):
    code = "TOKEN_EXPIRED"
    http_status = 410


class GatewayError(OrderFlowError):
    code = "GATEWAY_ERROR"
    http_status = 502


class GatewayAuthError(GatewayError):
    code = "GATEWAY_AUTH_ERROR"
    http_status = 502


class GatewayUnavailable(GatewayError):
    """Gateway timed out or was unreachable; transaction state is unknown."""
    code = "GATEWAY_UNAVAILABLE"
    http_status = 503


class GatewayTransactionNotFound(GatewayError):
    code = "GATEWAY_TRANSACTION_NOT_FOUND"
    http_status = 404


class InvalidSignature(OrderFlowError):
    code = "INVALID_SIGNATURE"
    http_status = 403


class TransactionFailed(OrderFlowError):
    """Unexpected failure inside a multi-entity write; everything was rolled back."""
    code = "TRANSACTION_FAILED"
    http_status = 500
