"""Database session management."""

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from propledger_api.exceptions import TransactionConflictError
from propledger_api.settings import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATEs for serialization_failure and deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}

if settings.database_url_computed.startswith("sqlite"):
    engine = create_engine(
        settings.database_url_computed,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        settings.database_url_computed,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Get the session factory used by services that own their transactions."""
    return SessionLocal


def is_retryable_conflict(exc: DBAPIError) -> bool:
    """Check whether a database error is a serialization or deadlock conflict."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code in RETRYABLE_SQLSTATES


def run_in_transaction(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    max_retries: Optional[int] = None,
) -> T:
    """Run ``work`` in a fresh session and commit, retrying on conflicts.

    Everything ``work`` does commits or rolls back together. Serialization
    failures and deadlocks are retried from scratch up to ``max_retries``
    times; any other exception rolls back and propagates.
    """
    if max_retries is None:
        max_retries = settings.transaction_max_retries

    attempt = 0
    while True:
        attempt += 1
        db = session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except DBAPIError as e:
            db.rollback()
            if not is_retryable_conflict(e):
                raise
            if attempt > max_retries:
                raise TransactionConflictError(
                    f"Transaction conflict persisted after {max_retries} retries"
                ) from e
            logger.warning(
                f"Transaction conflict, retrying (attempt {attempt} of {max_retries})",
                extra={"attempt": attempt},
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
