"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking helpers that degrade to plain reads on SQLite
- Atomic upsert-and-return counter
- Storage failure translation
"""

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Type, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError, DBAPIError

from ..exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def dialect_name(db: Session) -> str:
    try:
        return db.get_bind().dialect.name
    except Exception:
        return "sqlite"


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    return dialect_name(db) == 'postgresql'


def is_sqlite(db: Session) -> bool:
    """Check if the database is SQLite"""
    return dialect_name(db) == 'sqlite'


def acquire_row_lock(db: Session, model: Type[T], filter_condition) -> Optional[T]:
    """
    Lock one row for the rest of the transaction (FOR UPDATE on PostgreSQL).

    Returns:
        The locked model instance, or None if not found

    Example:
        user = acquire_row_lock(db, User, User.id == user_id)
    """
    query = db.query(model).populate_existing().filter(filter_condition)

    if is_postgres(db):
        query = query.with_for_update()

    return query.first()


def lock_rows_in_order(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by
) -> List[T]:
    """
    Lock every matching row, always in the same order.

    Two transactions locking overlapping row sets in a consistent order
    cannot deadlock each other.
    """
    query = db.query(model).populate_existing().filter(filter_condition).order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update()

    return query.all()


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> list:
    """
    Get pending records with skip_locked to prevent worker race conditions.

    Useful for background sweeps where two passes may overlap.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter for pending records
        order_by: Optional ordering
        limit: Maximum records to fetch

    Returns:
        List of locked model instances (other workers will skip these)
    """
    query = db.query(model).populate_existing().filter(filter_condition)

    if order_by is not None:
        query = query.order_by(order_by)

    # Only apply skip_locked on PostgreSQL
    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()


class AtomicCounter:
    """
    Helper for atomic counters.

    Prevents lost updates on concurrent increments.

    Example:
        AtomicCounter.increment(db, Seat, Seat.label == "A01", 'total_allocations')
        AtomicCounter.upsert_increment(db, SequenceCounter, 'period_key', '202601', 'value')
    """

    @staticmethod
    def increment(
        db: Session,
        model: Type[T],
        filter_condition,
        column_name: str,
        increment_by: int = 1
    ) -> int:
        """
        Atomically increment a counter column on an existing row.

        Returns the new value after increment.
        """
        from sqlalchemy import update, func

        column = getattr(model, column_name)

        stmt = (
            update(model)
            .where(filter_condition)
            .values({column_name: func.coalesce(column, 0) + increment_by})
            .returning(column)
            .execution_options(synchronize_session=False)
        )

        row = db.execute(stmt).fetchone()
        return row[0] if row else 0

    @staticmethod
    def upsert_increment(
        db: Session,
        model: Type[T],
        key_column: str,
        key_value,
        column_name: str,
        increment_by: int = 1,
        extra_values: Optional[dict] = None
    ) -> int:
        """
        Create the counter row at ``increment_by`` or advance it, in one statement.

        INSERT ... ON CONFLICT DO UPDATE ... RETURNING is atomic on both
        PostgreSQL and SQLite, so no caller ever observes a value twice.
        """
        if is_postgres(db):
            from sqlalchemy.dialects.postgresql import insert
        elif is_sqlite(db):
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"Counter upsert not supported on {dialect_name(db)}")

        column = getattr(model, column_name)
        values = {key_column: key_value, column_name: increment_by}
        values.update(extra_values or {})

        stmt = insert(model).values(**values)
        updates = {column_name: column + increment_by}
        for key in (extra_values or {}):
            updates[key] = stmt.excluded[key]

        stmt = stmt.on_conflict_do_update(
            index_elements=[key_column],
            set_=updates
        ).returning(column)

        return db.execute(stmt).scalar_one()


def is_connection_failure(exc: Exception) -> bool:
    """True when the driver lost (or never had) its connection"""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in (
        "could not connect",
        "connection refused",
        "server closed the connection",
        "unable to open database file",
        "connection timed out",
    ))


@contextmanager
def storage_guard(db: Session, operation: str) -> Iterator[None]:
    """
    Roll back and raise StorageUnavailableError when the database is unreachable.

    Lock contention and other operational errors propagate unchanged so
    callers with a retry policy can act on them.
    """
    try:
        yield
    except OperationalError as e:
        if not is_connection_failure(e):
            raise
        logger.error(f"Storage unavailable during {operation}: {e}")
        try:
            db.rollback()
        except Exception as rollback_error:
            logger.warning(f"Rollback after storage failure also failed: {rollback_error}")
        raise StorageUnavailableError(f"Storage unavailable during {operation}") from e
