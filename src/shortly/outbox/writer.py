"""
Outbox Writer

Appends change records to a service's outbox table on a connection that
already holds the mutation's transaction, so the entity change and its
records commit or roll back together.
"""

import logging
from typing import Any, Dict, List, Mapping, Sequence

from pydantic import TypeAdapter

from ..database.adapter import DatabaseConnection
from ..timeutil import utcnow
from .models import OutboxRecord

logger = logging.getLogger(__name__)

_payload_adapter = TypeAdapter(Dict[str, Any])


def serialize_payload(payload: Mapping[str, Any]) -> str:
    """Serialize a payload to JSON text, datetimes as ISO-8601."""
    return _payload_adapter.dump_json(dict(payload)).decode()


class OutboxWriter:
    """
    Writes change records inside the caller's transaction.

    Usage:
        async with db.transaction() as conn:
            row = await conn.fetchrow("UPDATE users SET ... RETURNING *", ...)
            outbox = OutboxWriter(conn)
            await outbox.write_many(USER_UPDATE_TOPICS, payload)
        # Commit persists the user row and its change records together
    """

    def __init__(self, conn: DatabaseConnection, table: str = "change_records"):
        self._conn = conn
        self.table = table
        self._records: List[OutboxRecord] = []

    async def write(self, topic: str, payload: Mapping[str, Any]) -> OutboxRecord:
        """
        Append one change record.

        Args:
            topic: Destination topic
            payload: Field set of the change, always including id and v

        Returns:
            The stored OutboxRecord
        """
        if "id" not in payload or "v" not in payload:
            raise ValueError("Change payload must carry id and v")

        row = await self._conn.fetchrow(
            f"""
            INSERT INTO {self.table} (topic, payload, created_at)
            VALUES ($1, $2, $3)
            RETURNING *
            """,
            topic,
            serialize_payload(payload),
            utcnow()
        )
        record = OutboxRecord.model_validate(row)
        self._records.append(record)

        logger.debug(
            "Wrote change record: id=%s topic=%s entity=%s v=%s",
            record.id, topic, payload["id"], payload["v"]
        )
        return record

    async def write_many(
        self,
        topics: Sequence[str],
        payload: Mapping[str, Any]
    ) -> List[OutboxRecord]:
        """Append one record per topic carrying the same payload."""
        return [await self.write(topic, payload) for topic in topics]

    @property
    def records(self) -> List[OutboxRecord]:
        """Records written through this writer."""
        return self._records.copy()
