# Overview: Row locking and retry for the few read-modify-write operations in the core.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    populate_existing() overwrites rows already in the identity map, so a
    locked read always sees the committed row, never an earlier snapshot
    held by the same session.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the version_id_col
    check on the locked model raises StaleDataError instead.
    """
    return query.with_for_update().populate_existing()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Each attempt runs inside a SAVEPOINT
    (session.begin_nested); a failed attempt rolls back to that savepoint
    only, so work the caller flushed earlier in the same transaction
    survives the retry. The caller still owns the commit.
    """
    if attempts is None:
        attempts = current_app.config.get("CONCURRENCY_RETRY_ATTEMPTS", 3)
    last_exc = None
    for attempt in range(attempts):
        try:
            with db.session.begin_nested():
                return func()
        except (OperationalError, StaleDataError) as exc:
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Concurrent update conflict, retrying (attempt %s of %s): %s",
                attempt + 1, attempts, exc,
            )
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
