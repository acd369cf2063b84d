"""
Shared Test Fixtures

Every service database is an in-memory SQLite database with the service's
schema; services talk through one InMemoryTransport.
"""

from typing import Any, Dict, Optional

import pytest

from shortly.config import ReplicationConfig, reset_config
from shortly.database import DatabaseAdapter, DatabaseConfig, create_schema
from shortly.transport import InMemoryTransport


def memory_db() -> DatabaseAdapter:
    return DatabaseAdapter(DatabaseConfig(backend="sqlite", sqlite_path=":memory:"))


async def service_db(service: str) -> DatabaseAdapter:
    db = memory_db()
    await db.connect()
    await create_schema(db, service)
    return db


def change(payload: Dict[str, Any], topic: str = "test-topic", record_id: Optional[int] = None) -> Dict[str, Any]:
    """Message body as the dispatcher publishes it."""
    return {"record_id": record_id, "topic": topic, "payload": payload}


@pytest.fixture
def config(monkeypatch):
    """Config with explicit dispatching (no sweep after commit)."""
    monkeypatch.setenv("DISPATCH_AFTER_COMMIT", "false")
    monkeypatch.setenv("OUTBOX_POLL_INTERVAL", "0.01")
    reset_config()
    yield ReplicationConfig()
    reset_config()


@pytest.fixture
def transport():
    return InMemoryTransport(max_deliveries=3)


@pytest.fixture
async def users_db():
    db = await service_db("users")
    yield db
    await db.disconnect()


@pytest.fixture
async def links_db():
    db = await service_db("links")
    yield db
    await db.disconnect()


@pytest.fixture
async def analytics_db():
    db = await service_db("analytics")
    yield db
    await db.disconnect()


@pytest.fixture
async def auth_db():
    db = await service_db("auth")
    yield db
    await db.disconnect()
