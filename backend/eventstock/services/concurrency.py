# Overview: Service-layer helpers for concurrency; locking, retries and atomic counter updates.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back and propagates, so a failed unit of work never leaves partial writes
    pending in the session.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Concurrent update detected (%s); retrying attempt %d/%d",
                type(exc).__name__, attempt + 2, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def apply_counter_delta(column, *, row_id: int, delta: int, extra_values: dict | None = None) -> bool:
    """
    Atomically add ``delta`` to an integer counter column.

    Runs a single ``UPDATE ... SET col = col + :delta WHERE id = :id`` and, for
    negative deltas, ``AND col >= :needed`` so the counter can never go below
    zero. Returns False when no row matched (row missing or not enough units).
    The in-session copy of the row is expired so the next read sees the new value.
    """
    model = column.class_
    stmt = update(model).where(model.id == row_id)
    if delta < 0:
        stmt = stmt.where(column >= -delta)
    values = {column.key: column + delta}
    if extra_values:
        values.update(extra_values)
    stmt = stmt.values(values).execution_options(synchronize_session=False)

    result = db.session.execute(stmt)
    if result.rowcount != 1:
        return False

    cached = db.session.identity_map.get(Session.identity_key(model, row_id))
    if cached is not None:
        db.session.expire(cached)
    return True
