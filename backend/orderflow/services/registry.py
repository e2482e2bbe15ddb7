# Overview: Wires service instances with their collaborators (notifier, gateway, settings) per application.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from .expiry_service import ExpirySweeper
from .gateway_client import SnapGatewayClient
from .gateway_service import GatewayPaymentService
from .notification_service import LoggingNotifier
from .order_service import OrderService
from .payment_service import PaymentService

EXTENSION_KEY = "orderflow"


@dataclass
class ServiceRegistry:
    orders: OrderService
    payments: PaymentService
    gateway_payments: GatewayPaymentService
    sweeper: ExpirySweeper
    notifier: object
    gateway: object


def build_services(config, *, notifier=None, gateway=None) -> ServiceRegistry:
    """Construct every service from a Flask config mapping."""
    notifier = notifier if notifier is not None else LoggingNotifier()
    if gateway is None:
        gateway = SnapGatewayClient(
            config.get("GATEWAY_SERVER_KEY", ""),
            is_production=config.get("GATEWAY_IS_PRODUCTION", False),
            timeout=config.get("GATEWAY_TIMEOUT_SECONDS", 15.0),
        )
    ttl = config.get("PAYMENT_TOKEN_TTL_MINUTES", 10)

    return ServiceRegistry(
        orders=OrderService(
            notifier,
            enforce_catalog_prices=config.get("ENFORCE_CATALOG_PRICES", True),
        ),
        payments=PaymentService(notifier),
        gateway_payments=GatewayPaymentService(
            gateway,
            notifier,
            server_key=config.get("GATEWAY_SERVER_KEY"),
            token_ttl_minutes=ttl,
            max_retries=config.get("MAX_PAYMENT_RETRIES", 5),
            app_url=config.get("APP_URL"),
            verify_signatures=config.get("GATEWAY_VERIFY_SIGNATURE", True),
            is_production=config.get("GATEWAY_IS_PRODUCTION", False),
        ),
        sweeper=ExpirySweeper(notifier, ttl_minutes=ttl),
        notifier=notifier,
        gateway=gateway,
    )


def get_services() -> ServiceRegistry:
    return current_app.extensions[EXTENSION_KEY]
