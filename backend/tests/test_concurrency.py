"""
Unit of work and optimistic-lock retry behaviour.
"""

import pytest
from sqlalchemy.orm.exc import StaleDataError

from orderflow.extensions import db
from orderflow.models import Category
from orderflow.services.concurrency import atomic, run_with_retry, unit_of_work
from orderflow.services.errors import TransactionFailed, ValidationFailed


class TestUnitOfWork:
    def test_commits_on_success(self, db_session):
        with unit_of_work():
            db.session.add(Category(name="Snacks", slug="snacks"))

        db.session.expunge_all()
        assert db.session.query(Category).filter_by(slug="snacks").count() == 1

    def test_unexpected_error_becomes_transaction_failed(self, db_session):
        with pytest.raises(TransactionFailed) as exc:
            with unit_of_work():
                db.session.add(Category(name="Snacks", slug="snacks"))
                db.session.flush()
                raise RuntimeError("boom")

        assert exc.value.details == {"cause": "RuntimeError"}
        assert db.session.query(Category).count() == 0

    def test_domain_errors_pass_through(self, db_session):
        with pytest.raises(ValidationFailed):
            with unit_of_work():
                db.session.add(Category(name="Snacks", slug="snacks"))
                db.session.flush()
                raise ValidationFailed("nope")

        assert db.session.query(Category).count() == 0


class TestRunWithRetry:
    def test_retries_stale_data(self, db_session):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StaleDataError("version mismatch")
            return "done"

        assert run_with_retry(flaky, backoff_base=0) == "done"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self, db_session):
        calls = []

        def always_stale():
            calls.append(1)
            raise StaleDataError("version mismatch")

        with pytest.raises(StaleDataError):
            atomic(always_stale, attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_domain_errors_are_not_retried(self, db_session):
        calls = []

        def invalid():
            calls.append(1)
            raise ValidationFailed("bad input")

        with pytest.raises(ValidationFailed):
            atomic(invalid, backoff_base=0)
        assert calls == [1]
