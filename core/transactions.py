"""
Unit of work for state-changing operations.

Services wrap their read-modify-write sequences in run_in_transaction()
and lock rows with select_for_update() inside the callable. Lock
contention reported by the database surfaces as ConflictError.
"""
import logging
from typing import Any, Callable, TypeVar

from django.db import OperationalError, transaction

from .exceptions import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Messages PostgreSQL and SQLite use for lock contention
_CONFLICT_MARKERS = (
    'deadlock detected',
    'could not serialize access',
    'could not obtain lock',
    'canceling statement due to statement timeout',
    'lock timeout',
    'database is locked',
)


def is_conflict(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CONFLICT_MARKERS)


def run_in_transaction(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run fn(*args, **kwargs) atomically.

    Nested calls join the outer transaction. Raises ConflictError when
    the database aborts the unit because of a concurrent writer.
    """
    try:
        with transaction.atomic():
            return fn(*args, **kwargs)
    except OperationalError as e:
        if not is_conflict(e):
            raise
        logger.warning(f"Transaction aborted by concurrent modification: {e}")
        raise ConflictError() from e


def on_commit(fn: Callable[[], Any]) -> None:
    """Schedule a side effect to run once the current transaction commits."""
    transaction.on_commit(fn)
