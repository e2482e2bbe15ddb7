# backend/orderflow/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().strip('"').strip("'").lower() in ("true", "1", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/orderflow.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///orderflow.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payment token lifetime; also the expiry sweeper's cutoff
    PAYMENT_TOKEN_TTL_MINUTES = int(os.environ.get("PAYMENT_TOKEN_TTL_MINUTES", "10"))
    MAX_PAYMENT_RETRIES = int(os.environ.get("MAX_PAYMENT_RETRIES", "5"))

    # Hosted payment gateway (Snap-style API)
    GATEWAY_SERVER_KEY = os.environ.get("GATEWAY_SERVER_KEY", "")
    GATEWAY_CLIENT_KEY = os.environ.get("GATEWAY_CLIENT_KEY", "")
    GATEWAY_IS_PRODUCTION = _env_flag("GATEWAY_IS_PRODUCTION", False)
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "15"))
    GATEWAY_VERIFY_SIGNATURE = _env_flag("GATEWAY_VERIFY_SIGNATURE", True)

    # Base URL used to build gateway finish/error/pending callbacks
    APP_URL = os.environ.get("APP_URL", "http://localhost:3000")

    # Bearer secret for the scheduler-triggered expiry endpoint (unset = open)
    CRON_SECRET = os.environ.get("CRON_SECRET")

    # Reject carts whose unit price differs from the catalog price
    ENFORCE_CATALOG_PRICES = _env_flag("ENFORCE_CATALOG_PRICES", True)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    GATEWAY_SERVER_KEY = "SB-Mid-server-test-key"
    CRON_SECRET = "test-cron-secret"
