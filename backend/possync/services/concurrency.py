# Overview: Service-layer helpers for optimistic concurrency and transaction retries.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)

# StaleDataError: the guarded "UPDATE ... WHERE sync_version = :old" matched
# no row because another writer bumped the version first.
# IntegrityError: a concurrent insert claimed the same idempotency key.
RETRYABLE_ERRORS = (OperationalError, StaleDataError, IntegrityError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version counter still guards every UPDATE.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """
    Execute a load-evaluate-apply-commit operation with retry on concurrency failures.

    ``func`` must re-load everything it reads, so a retry re-compares
    against the state that beat it. Any other exception rolls back and
    propagates unchanged.
    """
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            logger.info("Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
