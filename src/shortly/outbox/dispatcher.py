"""
Outbox Dispatcher

Publishes unsent change records and marks them sent.

One pass:
1. Select unsent rows, oldest first
2. Publish each to its topic, remembering the ids that were accepted
3. Mark those ids sent in one bulk update

Delivery is at-least-once. A crash between a publish and the bulk update
publishes the record again on the next pass, and two concurrent passes may
both publish a record. Consumers are idempotent, so neither is prevented.
"""

import asyncio
import logging
import time
from typing import List

from ..database.adapter import DatabaseAdapter, affected_rows, placeholders
from ..observability import create_span, record_counter, record_histogram
from ..timeutil import utcnow
from ..transport.base import Transport
from .models import OutboxRecord

logger = logging.getLogger(__name__)


class OutboxDispatcher:
    """
    Sweeps a service's outbox and publishes to the transport.

    Usage:
        dispatcher = OutboxDispatcher(db, transport)
        sent = await dispatcher.dispatch()
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        transport: Transport,
        table: str = "change_records",
        batch_size: int = 100
    ):
        self.db = db
        self.transport = transport
        self.table = table
        self.batch_size = batch_size
        # Serializes passes inside one process
        self._lock = asyncio.Lock()

    async def fetch_unsent(self, limit: int) -> List[OutboxRecord]:
        rows = await self.db.fetch(
            f"""
            SELECT * FROM {self.table}
            WHERE sent_at IS NULL
            ORDER BY id ASC
            LIMIT $1
            """,
            limit
        )
        return [OutboxRecord.model_validate(row) for row in rows]

    async def dispatch(self) -> int:
        """
        Run one dispatch pass.

        Returns:
            Number of records marked sent
        """
        async with self._lock:
            started = time.monotonic()
            with create_span("outbox.dispatch", {"outbox.table": self.table}) as span:
                records = await self.fetch_unsent(self.batch_size)
                if not records:
                    return 0

                sent_ids = []
                for record in records:
                    if await self._publish(record):
                        sent_ids.append(record.id)

                marked = await self._mark_sent(sent_ids)

                span.set_attribute("outbox.selected", len(records))
                span.set_attribute("outbox.sent", marked)

            record_counter("outbox_dispatched_total", marked, {"table": self.table})
            record_histogram("outbox_dispatch_duration_seconds", time.monotonic() - started)

            failed = len(records) - len(sent_ids)
            if failed:
                logger.warning(
                    "Outbox pass left %d of %d records unsent", failed, len(records)
                )
            else:
                logger.debug("Outbox pass sent %d records", marked)
            return marked

    async def drain(self, max_passes: int = 10) -> int:
        """Dispatch until a pass sends nothing."""
        total = 0
        for _ in range(max_passes):
            sent = await self.dispatch()
            if sent == 0:
                break
            total += sent
        return total

    async def _publish(self, record: OutboxRecord) -> bool:
        envelope = record.to_envelope()
        try:
            await self.transport.send(record.topic, envelope.model_dump(mode="json"))
        except Exception as e:
            # Stays unsent, the next pass retries it
            logger.warning(
                "Publish of change record %s to %s failed: %s",
                record.id, record.topic, e,
                extra={"record_id": record.id, "topic": record.topic}
            )
            record_counter("outbox_publish_failures_total", 1, {"topic": record.topic})
            return False
        return True

    async def _mark_sent(self, ids: List[int]) -> int:
        if not ids:
            return 0
        status = await self.db.execute(
            f"UPDATE {self.table} SET sent_at = $1 WHERE id IN ({placeholders(2, len(ids))})",
            utcnow(),
            *ids
        )
        return affected_rows(status)
