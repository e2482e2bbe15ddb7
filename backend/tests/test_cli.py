"""
Flask CLI commands.
"""

from datetime import timedelta

import pytest

from orderflow.extensions import db
from orderflow.models import InventoryLog, Order, Product
from orderflow.time_utils import utcnow


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def test_init_db(runner, db_session):
    result = runner.invoke(args=["system", "init-db"])
    assert result.exit_code == 0
    assert "Database ready" in result.output


def test_seed_demo_is_idempotent(runner, db_session):
    first = runner.invoke(args=["system", "seed-demo"])
    second = runner.invoke(args=["system", "seed-demo"])

    assert first.exit_code == 0
    assert "Created 4 products" in first.output
    assert "already present" in second.output
    assert db.session.query(Product).count() == 4
    espresso = db.session.query(Product).filter_by(sku="COF-ESP").one()
    assert espresso.quantity == 100
    assert db.session.query(InventoryLog).filter_by(product_id=espresso.id, type="IN").count() == 1


def test_verify_ledger(runner, db_session):
    runner.invoke(args=["system", "seed-demo"])

    clean = runner.invoke(args=["inventory", "verify-ledger"])
    assert clean.exit_code == 0
    assert "consistent" in clean.output

    product = db.session.query(Product).filter_by(sku="FOD-CRS").one()
    product.quantity = 3
    db.session.commit()

    broken = runner.invoke(args=["inventory", "verify-ledger"])
    assert broken.exit_code == 1
    assert "FOD-CRS" in broken.output
    assert "[mismatch]" in broken.output

    other = runner.invoke(args=["inventory", "verify-ledger", "--product-id", str(product.id + 1)])
    assert other.exit_code == 0


def test_expire_pending(runner, two_item_order, services):
    order, _, _ = two_item_order
    services.gateway_payments.create_gateway_transaction(order.id)
    row = db.session.get(Order, order.id)
    row.payment_token_issued_at = utcnow() - timedelta(minutes=11)
    db.session.commit()

    result = runner.invoke(args=["payments", "expire-pending"])

    assert result.exit_code == 0
    assert f"EXPIRED {order.order_number}" in result.output
    assert db.session.get(Order, order.id).payment_status == "EXPIRED"
