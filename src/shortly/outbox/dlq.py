"""
Dead Letter Queue (DLQ) Handling

The transport moves a change message to the owning service's dead-letter
topic once its own retry budget is exhausted. This module marks the origin
outbox rows failed and answers read-only queries about them. Nothing here
republishes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..database.adapter import DatabaseAdapter, affected_rows, placeholders
from ..observability import record_counter, traced
from ..timeutil import utcnow
from ..transport.base import MessageBatch
from .models import ChangeEnvelope, OutboxRecord

logger = logging.getLogger(__name__)


@dataclass
class DLQEntry:
    """An outbox record whose message was dead-lettered."""
    id: int
    topic: str
    payload: Dict[str, Any]
    created_at: datetime
    sent_at: Optional[datetime]
    failed_at: datetime

    @classmethod
    def from_record(cls, record: OutboxRecord) -> "DLQEntry":
        return cls(
            id=record.id,
            topic=record.topic,
            payload=record.payload,
            created_at=record.created_at,
            sent_at=record.sent_at,
            failed_at=record.failed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None
        }


class DeadLetterHandler:
    """
    Consumes a service's dead-letter topic.

    Usage:
        handler = DeadLetterHandler(db)
        await transport.deliver(Topic.LINKS_DLQ.value, handler.handle)
    """

    def __init__(self, db: DatabaseAdapter, table: str = "change_records"):
        self.db = db
        self.table = table

    @traced("dlq.handle")
    async def handle(self, batch: MessageBatch) -> int:
        """
        Mark the origin records of a dead-lettered batch failed.

        Returns:
            Number of rows newly marked failed
        """
        record_ids = []
        for message in batch.messages:
            record_id = _record_id(message.body)
            if record_id is None:
                logger.error(
                    "Dead-lettered message %s carries no record id, dropping",
                    message.id
                )
                continue
            record_ids.append(record_id)

        marked = 0
        if record_ids:
            try:
                status = await self.db.execute(
                    f"""
                    UPDATE {self.table} SET failed_at = $1
                    WHERE id IN ({placeholders(2, len(record_ids))}) AND failed_at IS NULL
                    """,
                    utcnow(),
                    *record_ids
                )
            except Exception:
                logger.exception("Failed to mark dead-lettered records %s", record_ids)
                batch.retry_all()
                return 0
            marked = affected_rows(status)

        batch.ack_all()
        record_counter("dlq_entries_total", marked, {"queue": batch.queue})
        logger.warning(
            "Dead-lettered %d messages from %s, %d records marked failed",
            len(batch), batch.queue, marked,
            extra={"record_ids": record_ids}
        )
        return marked

    async def get_entries(self, limit: int = 100, offset: int = 0) -> List[DLQEntry]:
        """Failed records, most recent failure first."""
        rows = await self.db.fetch(
            f"""
            SELECT * FROM {self.table}
            WHERE failed_at IS NOT NULL
            ORDER BY failed_at DESC, id DESC
            LIMIT $1 OFFSET $2
            """,
            limit, offset
        )
        return [DLQEntry.from_record(OutboxRecord.model_validate(row)) for row in rows]

    async def get_count(self) -> int:
        """Get total failed record count."""
        count = await self.db.fetchval(
            f"SELECT COUNT(*) AS count FROM {self.table} WHERE failed_at IS NOT NULL"
        )
        return int(count or 0)

    async def get_stats(self) -> Dict[str, Any]:
        """Failed record counts, total and per topic."""
        by_topic = await self.db.fetch(
            f"""
            SELECT topic, COUNT(*) AS count
            FROM {self.table}
            WHERE failed_at IS NOT NULL
            GROUP BY topic
            ORDER BY count DESC
            """
        )
        oldest = await self.db.fetchval(
            f"SELECT MIN(failed_at) AS oldest FROM {self.table} WHERE failed_at IS NOT NULL"
        )
        return {
            "total_count": sum(int(row["count"]) for row in by_topic),
            "by_topic": {row["topic"]: int(row["count"]) for row in by_topic},
            "oldest_failure": oldest.isoformat() if isinstance(oldest, datetime) else oldest,
        }


def _record_id(body: Any) -> Optional[int]:
    try:
        return ChangeEnvelope.from_body(body).record_id
    except ValueError:
        return None
