# Overview: Row locking, retry and guarded status transitions shared by the state-machine services.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PreconditionFailed
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The guarded UPDATE in transition_status is what makes transitions safe there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
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
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def transition_status(model, entity_id: int, values: dict, **expected) -> int:
    """
    Conditionally update one row: UPDATE ... WHERE id = :id AND <column> IN (...).

    expected maps column name -> allowed current value(s). Zero affected rows
    means another writer got there first (or the row was never in that
    state) and raises PreconditionFailed. The caller commits.
    """
    query = db.session.query(model).filter(model.id == entity_id)
    for column, allowed in expected.items():
        if isinstance(allowed, str):
            allowed = (allowed,)
        query = query.filter(getattr(model, column).in_(tuple(allowed)))

    updated = query.update(values, synchronize_session="fetch")
    if updated == 0:
        db.session.rollback()
        wanted = ", ".join(f"{col} in {sorted([v] if isinstance(v, str) else v)}" for col, v in expected.items())
        raise PreconditionFailed(f"{model.__name__} {entity_id} is no longer in the expected state ({wanted})")
    return updated
