from __future__ import annotations

import time

from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the whole database is
    write-locked by the first UPDATE and version_id checks catch the rest.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, "database is locked") and
    StaleDataError (version_id conflicts). Anything else propagates.
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


def dialect_name() -> str:
    return db.session.get_bind().dialect.name


def insert_if_absent(table, values: dict, conflict_columns: list[str]) -> bool:
    """
    INSERT a row unless one with the same conflict_columns exists.

    Returns True if this call inserted it. A duplicate is the normal outcome
    when another request created the row first, not an error.
    """
    dialect = dialect_name()
    if dialect in ("sqlite", "postgresql"):
        dialect_insert = sqlite_insert if dialect == "sqlite" else pg_insert
        stmt = dialect_insert(table).values(**values).on_conflict_do_nothing(
            index_elements=conflict_columns
        )
        return db.session.execute(stmt).rowcount == 1

    try:
        with db.session.begin_nested():
            db.session.execute(insert(table).values(**values))
        return True
    except IntegrityError:
        return False
