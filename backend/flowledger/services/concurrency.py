# Overview: Retry helpers for ledger writes that may hit lock or version conflicts.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PersistenceError
from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """Row lock for read-modify-write on batches and dispatches (a no-op on SQLite)."""
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Call func, rolling back and retrying when the database reports a
    lock, deadlock or stale row. The last failure propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            attempt += 1
            if attempt >= attempts:
                raise
            current_app.logger.warning("Retrying ledger write (%d/%d): %s", attempt, attempts - 1, exc)
            time.sleep(backoff_base * (2 ** (attempt - 1)))


def commit_with_retry(*, attempts: int = 3, backoff_base: float = 0.1):
    """
    Commit the session, retrying transient failures.

    Anything still failing surfaces as PersistenceError with the session
    rolled back.
    """
    try:
        return run_with_retry(db.session.commit, attempts=attempts, backoff_base=backoff_base)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"Database commit failed: {exc}") from exc
