# Overview: Service-layer transaction helpers; row locks, optimistic-lock retries and the unit of work.

from __future__ import annotations

import logging
import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import OrderFlowError, TransactionFailed

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OperationalError, StaleDataError)
PASS_THROUGH_ERRORS = (OrderFlowError,) + RETRYABLE_ERRORS


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Version counters on the locked models still catch lost races there.
    """
    return query.with_for_update()


@contextmanager
def unit_of_work():
    """
    Scope one atomic multi-entity mutation.

    Commits when the block exits normally and rolls back on every exception
    path. Domain errors and retryable concurrency errors propagate unchanged;
    anything else is re-raised as TransactionFailed so callers never see a
    partially written state.
    """
    try:
        yield db.session
        db.session.commit()
    except PASS_THROUGH_ERRORS:
        db.session.rollback()
        raise
    except Exception as exc:
        db.session.rollback()
        logger.exception("Unit of work rolled back")
        raise TransactionFailed(
            "Transaction failed and was rolled back",
            details={"cause": exc.__class__.__name__},
        ) from exc


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). The retried attempt re-reads state, so a
    lost race usually surfaces as a precondition failure (e.g. already paid).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.warning("Concurrency conflict (attempt %s/%s): %s", attempt + 1, attempts, exc.__class__.__name__)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def atomic(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """Run `func` inside a unit of work, retrying concurrency conflicts."""
    def _op():
        with unit_of_work():
            return func()
    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
