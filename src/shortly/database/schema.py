"""
Service Schemas

Tables each service needs for replication: its own entities, the replicas
it keeps of other services' entities, its outbox, and fact tables.

DDL is written once with {serial} and {ts} markers and rendered per
backend. {outbox} is the outbox table name.
"""

import logging
from typing import Dict, List

from .adapter import DatabaseAdapter, DatabaseBackend

logger = logging.getLogger(__name__)

_TYPES = {
    DatabaseBackend.SQLITE: {
        "serial": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "ts": "TEXT",
    },
    DatabaseBackend.POSTGRESQL: {
        "serial": "BIGSERIAL PRIMARY KEY",
        "ts": "TIMESTAMPTZ",
    },
}

OUTBOX_TABLE = """
CREATE TABLE IF NOT EXISTS {outbox} (
    id {serial},
    topic TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at {ts} NOT NULL,
    sent_at {ts},
    failed_at {ts}
);
CREATE INDEX IF NOT EXISTS ix_{outbox}_sent_at ON {outbox} (sent_at, id);
"""

# Owned by the users service, replicated to auth with credentials
USERS_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    v INTEGER NOT NULL DEFAULT 0,
    created_at {ts} NOT NULL,
    deleted_at {ts},
    username TEXT UNIQUE,
    password TEXT,
    scopes TEXT
);
"""

# Reduced user replica (links, analytics)
USER_REPLICA_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    v INTEGER NOT NULL DEFAULT 0,
    created_at {ts} NOT NULL,
    deleted_at {ts},
    username TEXT
);
"""

# Owned by the links service
LINKS_TABLE = """
CREATE TABLE IF NOT EXISTS links (
    id TEXT PRIMARY KEY,
    v INTEGER NOT NULL DEFAULT 0,
    created_at {ts} NOT NULL,
    deleted_at {ts},
    short TEXT UNIQUE,
    long TEXT,
    user_id TEXT,
    expires_at {ts}
);
CREATE INDEX IF NOT EXISTS ix_links_user_id ON links (user_id);
"""

# Reduced link replica (users)
LINK_REPLICA_TABLE = """
CREATE TABLE IF NOT EXISTS links (
    id TEXT PRIMARY KEY,
    v INTEGER NOT NULL DEFAULT 0,
    created_at {ts} NOT NULL,
    deleted_at {ts},
    user_id TEXT,
    expires_at {ts}
);
CREATE INDEX IF NOT EXISTS ix_links_user_id ON links (user_id);
"""

# Analytics link replica carrying the lookup rollup
ANALYTICS_LINKS_TABLE = """
CREATE TABLE IF NOT EXISTS links (
    id TEXT PRIMARY KEY,
    v INTEGER NOT NULL DEFAULT 0,
    created_at {ts} NOT NULL,
    deleted_at {ts},
    short TEXT,
    long TEXT,
    user_id TEXT,
    expires_at {ts},
    lookup_count INTEGER NOT NULL DEFAULT 0,
    last_lookup_at {ts}
);
CREATE TABLE IF NOT EXISTS link_lookups (
    id {serial},
    link_id TEXT NOT NULL,
    occurred_at {ts} NOT NULL,
    UNIQUE (link_id, occurred_at)
);
"""

# Redirect replica (lookups), resolved by short code
LOOKUP_LINKS_TABLE = """
CREATE TABLE IF NOT EXISTS links (
    id TEXT PRIMARY KEY,
    v INTEGER NOT NULL DEFAULT 0,
    created_at {ts} NOT NULL,
    deleted_at {ts},
    short TEXT,
    long TEXT,
    expires_at {ts}
);
CREATE INDEX IF NOT EXISTS ix_links_short ON links (short);
"""

SERVICE_SCHEMAS: Dict[str, List[str]] = {
    "users": [USERS_TABLE, LINK_REPLICA_TABLE, OUTBOX_TABLE],
    "links": [LINKS_TABLE, USER_REPLICA_TABLE, OUTBOX_TABLE],
    "analytics": [USER_REPLICA_TABLE, ANALYTICS_LINKS_TABLE],
    "auth": [USERS_TABLE],
    "lookups": [LOOKUP_LINKS_TABLE],
}


def render_schema(
    service: str,
    backend: DatabaseBackend,
    outbox_table: str = "change_records"
) -> str:
    """Render the DDL script of a service for one backend."""
    if service not in SERVICE_SCHEMAS:
        raise ValueError(f"Unknown service: {service}")
    if not outbox_table.isidentifier():
        raise ValueError(f"Invalid outbox table name: {outbox_table!r}")
    return "\n".join(
        ddl.format(outbox=outbox_table, **_TYPES[backend])
        for ddl in SERVICE_SCHEMAS[service]
    )


async def create_schema(
    db: DatabaseAdapter,
    service: str,
    outbox_table: str = "change_records"
) -> None:
    """Create the tables of a service if they do not exist."""
    await db.execute_script(render_schema(service, db.backend, outbox_table))
    logger.info(f"Schema ready for service: {service}")
