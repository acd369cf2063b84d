"""
Database access for SQLite and PostgreSQL.

Usage:
    from shortly.database import get_database

    db = await get_database()

    async with db.transaction() as conn:
        await conn.execute("UPDATE links SET deleted_at = $1 WHERE id = $2", now, link_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    DatabaseConnection,
    affected_rows,
    close_database,
    get_database,
    placeholders,
)
from .errors import DatabaseError, UniqueViolationError
from .schema import create_schema, render_schema

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "DatabaseConnection",
    "DatabaseError",
    "UniqueViolationError",
    "affected_rows",
    "close_database",
    "create_schema",
    "get_database",
    "placeholders",
    "render_schema",
]
