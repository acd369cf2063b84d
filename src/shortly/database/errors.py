"""
Database Errors

Backend-neutral exceptions raised by the database adapter. Driver errors
from asyncpg and sqlite3 are translated so callers never import a driver.
"""

import sqlite3
from contextlib import contextmanager

import asyncpg

from ..errors import ErrorCode, ReplicationError


class DatabaseError(ReplicationError):
    """A statement or transaction failed."""

    code = ErrorCode.PERSISTENCE_FAILURE


class UniqueViolationError(DatabaseError):
    """A unique or primary key constraint rejected a write."""

    code = ErrorCode.DUPLICATE_APPLY


@contextmanager
def translate_errors():
    """Re-raise driver errors as DatabaseError / UniqueViolationError."""
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        raise UniqueViolationError(str(e)) from e
    except sqlite3.IntegrityError as e:
        if "UNIQUE constraint failed" in str(e):
            raise UniqueViolationError(str(e)) from e
        raise DatabaseError(str(e)) from e
    except (asyncpg.PostgresError, sqlite3.Error) as e:
        raise DatabaseError(str(e)) from e
