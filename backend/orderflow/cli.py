# Overview: Flask CLI command groups for bootstrap, scheduled jobs, and ledger inspection.

# backend/orderflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migrated databases).
# - python -m flask system seed-demo
#   Idempotent demo catalog: categories and stocked products with opening ledger rows.
#
# Scheduled jobs:
# - python -m flask payments expire-pending
#   Cancel PENDING_PAYMENT orders whose payment token outlived its window.
#
# Ledger inspection:
# - python -m flask inventory verify-ledger [--product-id 1]
#   List products whose quantity disagrees with their latest inventory log.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Category, Product
from .services import inventory_service
from .services.concurrency import atomic
from .services.registry import get_services


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables for a fresh database."""
    click.echo("BUILD  Creating all tables...")
    db.create_all()
    click.echo("PASS Database ready.")


DEMO_CATEGORIES = [
    ("Coffee", "coffee"),
    ("Food", "food"),
]

# (category slug, sku, name, price_cents, cost_price_cents, opening stock, low stock alert)
DEMO_PRODUCTS = [
    ("coffee", "COF-ESP", "Espresso", 1800000, 600000, 100, 10),
    ("coffee", "COF-LAT", "Cafe Latte", 2500000, 900000, 80, 10),
    ("food", "FOD-CRS", "Butter Croissant", 2200000, 1100000, 30, 5),
    ("food", "FOD-SND", "Chicken Sandwich", 3500000, 1600000, 20, 5),
]


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Seed a small demo catalog. Existing SKUs are left untouched."""
    def _op():
        categories = {}
        for name, slug in DEMO_CATEGORIES:
            category = db.session.query(Category).filter_by(slug=slug).first()
            if category is None:
                category = Category(name=name, slug=slug)
                db.session.add(category)
                db.session.flush()
            categories[slug] = category

        created = []
        for slug, sku, name, price, cost, stock, alert in DEMO_PRODUCTS:
            if db.session.query(Product).filter_by(sku=sku).first():
                continue
            product = Product(
                category_id=categories[slug].id,
                sku=sku,
                name=name,
                price_cents=price,
                cost_price_cents=cost,
                track_inventory=True,
                quantity=0,
                low_stock_alert=alert,
            )
            db.session.add(product)
            db.session.flush()
            inventory_service.record_movement(
                product,
                inventory_service.MOVEMENT_IN,
                stock,
                reason="Opening stock",
                reference_type=inventory_service.REFERENCE_MANUAL,
            )
            created.append(sku)
        return created

    created = atomic(_op)
    if created:
        click.echo(f"PASS Created {len(created)} products: {', '.join(created)}")
    else:
        click.echo("SKIP Demo catalog already present.")


@click.group('payments')
def payments_group():
    """Payment maintenance jobs."""


@payments_group.command('expire-pending')
@with_appcontext
def expire_pending():
    """Expire unpaid gateway payments past their token window."""
    result = get_services().sweeper.run()
    click.echo(f"Checked {result.checked} orders, expired {len(result.expired)}.")
    for order_number in result.expired:
        click.echo(f"  EXPIRED {order_number}")
    for failure in result.failed:
        click.echo(f"  FAIL order {failure['order_id']}: {failure['error']}")
    if result.failed:
        raise SystemExit(1)


@click.group('inventory')
def inventory_group():
    """Inventory ledger inspection."""


@inventory_group.command('verify-ledger')
@click.option('--product-id', type=int, default=None, help='Check a single product')
@with_appcontext
def verify_ledger(product_id):
    """Report products whose quantity disagrees with the inventory ledger."""
    problems = inventory_service.verify_ledger(product_id=product_id)
    if not problems:
        click.echo("PASS Inventory ledger is consistent.")
        return
    for problem in problems:
        click.echo(
            f"FAIL product {problem['product_id']} ({problem['sku']}): "
            f"quantity={problem['quantity']} ledger={problem['ledger_stock']} [{problem['issue']}]"
        )
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(payments_group)
    app.cli.add_command(inventory_group)
