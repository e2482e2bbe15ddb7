"""
Expiry sweep: boundary, idempotency and per-order isolation.
"""

from datetime import timedelta

from orderflow.extensions import db
from orderflow.models import Order, Payment, Product
from orderflow.services import expiry_service
from orderflow.services.concurrency import atomic
from orderflow.services.expiry_service import is_token_expired, mark_order_expired
from orderflow.time_utils import utcnow


def _issue(services, order):
    services.gateway_payments.create_gateway_transaction(order.id)
    return db.session.get(Order, order.id).payment_token_issued_at


class TestTokenExpiry:
    def test_expired_exactly_at_ttl(self, two_item_order, services):
        order, _, _ = two_item_order
        issued_at = _issue(services, order)
        refreshed = db.session.get(Order, order.id)

        assert is_token_expired(refreshed, 10, issued_at + timedelta(minutes=10)) is True
        assert is_token_expired(refreshed, 10, issued_at + timedelta(minutes=10) - timedelta(seconds=1)) is False

    def test_missing_token_counts_as_expired(self, two_item_order):
        order, _, _ = two_item_order
        assert is_token_expired(db.session.get(Order, order.id), 10) is True


class TestExpirySweeper:
    def test_sweep_at_boundary_expires_order(self, two_item_order, services, notifier):
        order, p1, _ = two_item_order
        issued_at = _issue(services, order)

        result = services.sweeper.run(now=issued_at + timedelta(minutes=10))

        assert result.checked == 1
        assert result.expired == [order.order_number]
        refreshed = db.session.get(Order, order.id)
        assert (refreshed.status, refreshed.payment_status) == ("CANCELLED", "EXPIRED")
        assert refreshed.cancellation_reason == "Payment expired - exceeded 10 minute time limit"
        assert db.session.query(Payment).filter_by(order_id=order.id).one().status == "EXPIRED"
        assert db.session.get(Product, p1.id).quantity == 10
        assert "order:status_changed" in notifier.names()

    def test_sweep_before_boundary_leaves_order(self, two_item_order, services):
        order, _, _ = two_item_order
        issued_at = _issue(services, order)

        result = services.sweeper.run(now=issued_at + timedelta(minutes=9, seconds=59))

        assert result.checked == 0
        assert db.session.get(Order, order.id).status == "PENDING_PAYMENT"

    def test_repeated_sweeps_do_not_duplicate_rows(self, two_item_order, services):
        order, _, _ = two_item_order
        issued_at = _issue(services, order)
        later = issued_at + timedelta(minutes=15)

        first = services.sweeper.run(now=later)
        second = services.sweeper.run(now=later)

        assert len(first.expired) == 1
        assert second.to_dict() == {"checked": 0, "expired_count": 0, "expired": [], "failed": []}
        assert db.session.query(Payment).filter_by(order_id=order.id, status="EXPIRED").count() == 1

    def test_orders_without_token_are_ignored(self, two_item_order, services):
        result = services.sweeper.run(now=utcnow() + timedelta(days=1))
        assert result.checked == 0

    def test_settled_orders_are_skipped(self, two_item_order, services):
        order, _, _ = two_item_order
        issued_at = _issue(services, order)
        services.payments.confirm_payment(order.id, order.total_cents)

        result = services.sweeper.run(now=issued_at + timedelta(hours=1))

        assert result.checked == 0
        assert db.session.get(Order, order.id).status == "PAID"

    def test_one_failure_does_not_stop_the_sweep(self, make_product, make_order, services, monkeypatch):
        product = make_product()
        first = make_order([(product, 1)])
        second = make_order([(product, 1)])
        _issue(services, first)
        _issue(services, second)
        original = expiry_service.mark_order_expired

        def flaky(order, **kwargs):
            if order.id == first.id:
                raise RuntimeError("disk full")
            return original(order, **kwargs)

        monkeypatch.setattr(expiry_service, "mark_order_expired", flaky)
        result = services.sweeper.run(now=utcnow() + timedelta(minutes=11))

        assert result.checked == 2
        assert result.expired == [second.order_number]
        assert result.failed == [{"order_id": first.id, "error": "TRANSACTION_FAILED"}]
        assert db.session.get(Order, first.id).status == "PENDING_PAYMENT"
        assert db.session.get(Order, second.id).status == "CANCELLED"


class TestMarkOrderExpired:
    def test_without_attempts_writes_single_expired_row(self, two_item_order):
        order, _, _ = two_item_order
        reason = expiry_service.expiry_reason(10)

        def _expire():
            locked = db.session.get(Order, order.id)
            return mark_order_expired(locked, now=utcnow(), reason=reason)

        assert atomic(_expire) == "PENDING_PAYMENT"
        assert atomic(_expire) == "CANCELLED"

        rows = db.session.query(Payment).filter_by(order_id=order.id).all()
        assert len(rows) == 1
        assert rows[0].status == "EXPIRED"
        assert rows[0].reference_number == order.order_number
