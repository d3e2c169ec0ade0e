"""
Unité de travail.

Toute opération déclenchée de l'extérieur (route HTTP, script) s'exécute
dans UN bloc `atomic(db)` :
- commit si tout passe
- rollback sur n'importe quelle exception
- lock_timeout borné (PostgreSQL uniquement)
- les conflits de verrou / deadlock / sérialisation deviennent ConcurrencyError
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from backend.app.core.config import settings
from backend.app.core.errors import ConcurrencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# lock_not_available, serialization_failure, deadlock_detected
CONFLICT_SQLSTATES = {"55P03", "40001", "40P01"}


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    if orig is None:
        return None
    # psycopg 3 -> sqlstate ; psycopg2 -> pgcode
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_conflict(exc: DBAPIError) -> bool:
    if _sqlstate(exc) in CONFLICT_SQLSTATES:
        return True
    # SQLite (tests / dev)
    return isinstance(exc, OperationalError) and "database is locked" in str(exc).lower()


def _apply_lock_timeout(db: Session) -> None:
    if db.get_bind().dialect.name != "postgresql":
        return
    db.execute(text(f"SET LOCAL lock_timeout = {int(settings.LOCK_TIMEOUT_MS)}"))


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    try:
        _apply_lock_timeout(db)
        yield db
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        if is_conflict(exc):
            raise ConcurrencyError("Lock conflict, retry the operation") from exc
        raise
    except BaseException:
        db.rollback()
        raise


def retry_on_conflict(
    fn: Callable[..., T],
    *args,
    retries: int | None = None,
    backoff: float | None = None,
    **kwargs,
) -> T:
    """
    Rejoue `fn` uniquement sur ConcurrencyError, avec backoff exponentiel.
    Les autres erreurs remontent immédiatement.
    """
    retries = settings.CONFLICT_MAX_RETRIES if retries is None else retries
    backoff = settings.CONFLICT_BACKOFF_SECONDS if backoff is None else backoff

    attempt = 0
    while True:
        try:
            return fn(*args, **kwargs)
        except ConcurrencyError:
            if attempt >= retries:
                raise
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning(
                "Concurrency conflict in %s, retry %d/%d in %.3fs",
                getattr(fn, "__name__", fn),
                attempt,
                retries,
                delay,
            )
            time.sleep(delay)
