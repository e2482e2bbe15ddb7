"""
Pytest fixtures for orderflow backend tests.

Provides test database setup, a scripted fake gateway, a recording notifier,
catalog/order factories, and the test client.
"""

import pytest

from orderflow import create_app
from orderflow.config import TestConfig
from orderflow.extensions import db
from orderflow.models import Category, Product
from orderflow.services import inventory_service
from orderflow.services.concurrency import atomic
from orderflow.services.errors import GatewayTransactionNotFound
from orderflow.services.gateway_client import to_gateway_amount
from orderflow.services.registry import EXTENSION_KEY


class RecordingNotifier:
    """Collects emitted events; can be told to fail on every emit."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.events = []
        self.fail = False

    def emit(self, event, payload):
        if self.fail:
            raise RuntimeError("notification transport down")
        self.events.append((event, payload))

    def names(self):
        return [name for name, _ in self.events]


class FakeGateway:
    """
    Scripted stand-in for SnapGatewayClient.

    Statuses are keyed by gateway order id; an unknown id raises
    GatewayTransactionNotFound like the real client does.
    """

    name = "midtrans"

    def __init__(self):
        self.reset()

    def reset(self):
        self.created = []
        self.statuses = {}
        self.status_calls = []
        self.cancelled = []
        self.create_error = None
        self.status_error = None
        self._counter = 0

    def create_transaction(self, params):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(params)
        self._counter += 1
        token = f"tok-{self._counter}"
        return {"token": token, "redirect_url": f"https://pay.example.test/{token}"}

    def get_status(self, gateway_order_id):
        self.status_calls.append(gateway_order_id)
        if self.status_error is not None:
            raise self.status_error
        data = self.statuses.get(gateway_order_id)
        if data is None:
            raise GatewayTransactionNotFound("Transaction not found at gateway")
        return dict(data)

    def cancel(self, gateway_order_id):
        self.cancelled.append(gateway_order_id)
        data = self.statuses.get(gateway_order_id)
        if data is None:
            raise GatewayTransactionNotFound("Transaction not found at gateway")
        if data["transaction_status"] in ("pending", "capture"):
            data = {**data, "transaction_status": "cancel"}
            self.statuses[gateway_order_id] = data
        return dict(data)

    def set_status(self, gateway_order_id, transaction_status, *, total_cents=0, **extra):
        self.statuses[gateway_order_id] = {
            "order_id": gateway_order_id,
            "transaction_status": transaction_status,
            "status_code": "200",
            "gross_amount": f"{to_gateway_amount(total_cents)}.00",
            **extra,
        }


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig, notifier=RecordingNotifier(), gateway=FakeGateway())

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def services(app, db_session):
    registry = app.extensions[EXTENSION_KEY]
    registry.notifier.reset()
    registry.gateway.reset()
    return registry


@pytest.fixture(scope='function')
def notifier(services):
    return services.notifier


@pytest.fixture(scope='function')
def gateway(services):
    return services.gateway


@pytest.fixture(scope='function')
def actor_headers():
    return {"X-Actor-Id": "7", "X-Actor-Role": "cashier"}


@pytest.fixture(scope='function')
def make_product(db_session):
    """Create a product with an opening IN ledger row for its stock."""
    counter = {"n": 0}

    def _make(
        name=None,
        price_cents=10000,
        quantity=10,
        track_inventory=True,
        low_stock_alert=None,
        cost_price_cents=None,
        category=None,
    ):
        counter["n"] += 1
        n = counter["n"]

        def _op():
            product = Product(
                sku=f"SKU-{n:03d}",
                name=name or f"Product {n}",
                price_cents=price_cents,
                cost_price_cents=cost_price_cents,
                track_inventory=track_inventory,
                quantity=0,
                low_stock_alert=low_stock_alert,
                category=category,
            )
            db.session.add(product)
            db.session.flush()
            if track_inventory and quantity:
                inventory_service.record_movement(
                    product,
                    inventory_service.MOVEMENT_IN,
                    quantity,
                    reason="Opening stock",
                    reference_type=inventory_service.REFERENCE_MANUAL,
                )
            return product

        return atomic(_op)

    return _make


@pytest.fixture(scope='function')
def category(db_session):
    cat = Category(name="Drinks", slug="drinks")
    db_session.add(cat)
    db_session.commit()
    return cat


@pytest.fixture(scope='function')
def make_order(services):
    """Create an order through OrderService from (product, quantity) pairs."""
    def _make(lines, order_type="TAKEAWAY", **extra):
        payload = {
            "order_type": order_type,
            "items": [
                {"product_id": product.id, "quantity": qty, "unit_price_cents": product.price_cents}
                for product, qty in lines
            ],
        }
        if order_type == "DINE_IN":
            payload.setdefault("table_number", "4")
        payload.update(extra)
        return services.orders.create_order(payload, user_id=7)

    return _make


@pytest.fixture(scope='function')
def two_item_order(make_product, make_order):
    """Order of 2 x 10000 + 1 x 5000 = 25000, no tax."""
    p1 = make_product(name="Nasi Goreng", price_cents=10000, quantity=10)
    p2 = make_product(name="Es Teh", price_cents=5000, quantity=10)
    order = make_order([(p1, 2), (p2, 1)])
    return order, p1, p2
