"""
Exceptions raised by the attendance database layer.

Expected scan outcomes (unknown tag, duplicate, ...) are ScanResult values,
not exceptions. Only infrastructure failures and invalid session requests
are raised.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class AttendanceError(Exception):
    """Base class for attendance backend errors."""


class StoreError(AttendanceError):
    """The store was unreachable or returned an unusable response."""


class SessionError(AttendanceError):
    """A session request referenced a missing course, lecturer or session."""

    def __init__(self, message: str, not_found: bool = True):
        super().__init__(message)
        self.not_found = not_found


@contextmanager
def store_errors(action: str):
    """Re-raise SQLAlchemy failures inside the block as StoreError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"[STORE] {action} failed: {e}")
        raise StoreError(f"{action} failed: {e}") from e


def is_unique_violation(exc: Exception, constraint: str, columns=()) -> bool:
    """
    True if an IntegrityError was raised by the named unique constraint.

    PostgreSQL reports SQLSTATE 23505 and the constraint name; SQLite only
    reports the columns ("UNIQUE constraint failed: table.col, ...").
    """
    orig = getattr(exc, "orig", None)
    message = str(orig if orig is not None else exc)

    if constraint in message:
        return True
    if getattr(orig, "pgcode", None) == "23505":
        return False
    return "UNIQUE constraint failed" in message and all(c in message for c in columns)
