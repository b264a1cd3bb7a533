"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection
- Row locking helpers
- Bounded retry for idempotent storage reads
"""

import functools
import logging
from typing import Optional, TypeVar, Type

from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError, DBAPIError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
    RetryError,
)

from ..config import settings
from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        dialect = db.bind.dialect.name
        return dialect == 'postgresql'
    except Exception:
        return False


def acquire_row_lock(
    db: Session,
    model: Type[T],
    *filter_conditions,
    nowait: bool = False,
    skip_locked: bool = False
) -> Optional[T]:
    """
    Acquire a row-level lock on a database record.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_conditions: Filters to find the row
        nowait: If True, raise error immediately if lock unavailable (PostgreSQL only)
        skip_locked: If True, skip locked rows (PostgreSQL only)

    Returns:
        The locked model instance, or None if not found

    Example:
        table = acquire_row_lock(db, RestaurantTable, RestaurantTable.id == table_id)
    """
    query = db.query(model).filter(*filter_conditions)

    # Only apply locking on PostgreSQL; SQLite serializes writers on its own
    if is_postgres(db):
        if skip_locked:
            query = query.with_for_update(skip_locked=True)
        elif nowait:
            query = query.with_for_update(nowait=True)
        else:
            query = query.with_for_update()

    return query.first()


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> list:
    """
    Get pending records with skip_locked to prevent worker race conditions.

    Used by the sweeper and the notification worker so several processes can
    drain the same queue without processing a row twice.
    """
    query = db.query(model).filter(filter_condition)

    if order_by is not None:
        query = query.order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()


def is_transient_storage_error(exc: BaseException) -> bool:
    """Connection drops and lock timeouts are worth retrying for reads"""
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


_log_before_sleep = before_sleep_log(logger, logging.WARNING)


def _rollback_before_retry(retry_state) -> None:
    """A failed statement poisons the session; reset it before the next try"""
    _log_before_sleep(retry_state)
    owner = retry_state.args[0] if retry_state.args else None
    db = getattr(owner, "db", None)
    if db is not None:
        db.rollback()


def retry_storage_reads(func):
    """
    Retry an idempotent read with bounded exponential backoff.

    Meant for service methods holding their session on `self.db`. After the
    last attempt the storage error is reported as StorageUnavailable.
    Never use this on writes.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        retrying = retry(
            stop=stop_after_attempt(max(1, settings.storage_read_retry_attempts)),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
            retry=retry_if_exception(is_transient_storage_error),
            before_sleep=_rollback_before_retry,
            reraise=False,
        )
        try:
            return retrying(func)(*args, **kwargs)
        except RetryError as e:
            last = e.last_attempt.exception()
            logger.error(f"Storage read failed after retries in {func.__name__}: {last}")
            raise StorageUnavailable(str(last)) from last

    return wrapper
