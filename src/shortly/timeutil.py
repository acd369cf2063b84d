"""
Timestamp helpers.

Every timestamp that crosses a service boundary or reaches a table is a
timezone-aware UTC datetime.
"""

from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import AfterValidator, TypeAdapter


def utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]

_utc_adapter = TypeAdapter(UtcDatetime)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (SQLite) or datetime (PostgreSQL) to UTC."""
    return _utc_adapter.validate_python(value)
