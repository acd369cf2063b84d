"""
Change Consumer

Applies change records from other services to a local replica.

Per message:
- v == 0 is a create. A unique violation with a row already stored under
  the same id means the message was applied before and is acked. A
  violation on another unique column with no such row is retried.
- v > 0 is an update, applied only if the local row is at v - 1. When it
  is not, the row is looked up at v: found means a duplicate delivery
  (ack), a local version above v means a late duplicate (ack without
  applying), anything else means the predecessor has not arrived yet and
  the message is retried until it has.

A soft delete is an update carrying deletedAt. Every apply, including the
handler's cascade and the change records the cascade appends, runs in one
local transaction.
"""

import logging
import time
from typing import Any, Optional

from ..database.adapter import DatabaseAdapter, DatabaseConnection
from ..database.errors import UniqueViolationError
from ..errors import ApplyOutcome
from ..observability import create_span, record_counter, record_histogram
from ..outbox.dispatcher import OutboxDispatcher
from ..outbox.models import ChangeEnvelope
from ..outbox.transactional import dispatch_committed
from ..outbox.writer import OutboxWriter
from ..transport.base import MessageBatch
from .handler import ReplicaHandler
from .models import ApplyResult, ChangeData, SyncReport, VersionKey

logger = logging.getLogger(__name__)


class ChangeConsumer:
    """
    Generic consumer parametrized by a ReplicaHandler.

    Usage:
        consumer = ChangeConsumer(db, UserReplicaHandler(), outbox_table="change_records")
        report = await consumer.sync(batch)
        invalidate_cache(report.replicated_ids)

    `outbox_table` enables cascades that append change records; leave it
    None for services without an outbox. With a `dispatcher`, a sweep runs
    after a batch whose cascades wrote records.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        handler: ReplicaHandler,
        outbox_table: Optional[str] = None,
        dispatcher: Optional[OutboxDispatcher] = None
    ):
        self.db = db
        self.handler = handler
        self.outbox_table = outbox_table
        self.dispatcher = dispatcher

    async def sync(self, batch: MessageBatch) -> SyncReport:
        """
        Apply every message of a batch in order and settle each one.

        A failed message is retried on its own; it never rolls back or
        blocks the others.
        """
        started = time.monotonic()
        report = SyncReport(queue=batch.queue)

        for message in batch.messages:
            result = await self.apply(message.body)
            if result.ack:
                message.ack()
            else:
                message.retry()
            report.results.append(result)

        if report.emitted and self.dispatcher is not None:
            await dispatch_committed(self.dispatcher)

        record_histogram(
            "consumer_batch_duration_seconds",
            time.monotonic() - started,
            {"entity": self.handler.entity}
        )
        logger.info(
            "Synced %d %s changes from %s: %s",
            len(batch), self.handler.entity, batch.queue, report.counts()
        )
        return report

    async def apply(self, body: Any) -> ApplyResult:
        """Decode one message body and apply it."""
        try:
            envelope = ChangeEnvelope.from_body(body)
            data = self.handler.decode(envelope.payload)
        except ValueError as e:
            logger.error(f"Undecodable {self.handler.entity} change: {e}")
            return self._finish(ApplyResult(ApplyOutcome.INVALID, error=str(e)))

        with create_span(
            "consumer.apply",
            {"entity.type": self.handler.entity, "entity.id": data.id, "entity.v": data.v}
        ) as span:
            if data.is_create:
                result = await self.create(data)
            else:
                result = await self.update(data)
            span.set_attribute("apply.outcome", result.outcome.value)
        return self._finish(result)

    async def create(self, data: ChangeData) -> ApplyResult:
        try:
            async with self.db.transaction() as conn:
                row = await self.handler.create_entity(conn, data)
                emitted = await self._after_apply(conn, row, data)
        except UniqueViolationError as e:
            if not await self._exists(data.id):
                logger.warning(
                    "Create of %s %s collides with another row, will retry: %s",
                    self.handler.entity, data.id, e,
                    extra={"entity_id": data.id, "v": data.v}
                )
                return ApplyResult(ApplyOutcome.FAILED, data.id, data.v, error=str(e))
            logger.info(
                "%s %s already created, acking duplicate",
                self.handler.entity, data.id,
                extra={"entity_id": data.id, "v": data.v}
            )
            return ApplyResult(ApplyOutcome.DUPLICATE, data.id, data.v)
        except Exception as e:
            logger.warning(
                "Create of %s %s failed, will retry: %s",
                self.handler.entity, data.id, e,
                exc_info=True
            )
            return ApplyResult(ApplyOutcome.FAILED, data.id, data.v, error=str(e))
        return ApplyResult(ApplyOutcome.APPLIED, data.id, data.v, row=row, emitted=emitted)

    async def update(self, data: ChangeData) -> ApplyResult:
        try:
            async with self.db.transaction() as conn:
                row = await self.handler.update_entity(conn, VersionKey(data.id, data.v - 1), data)
                if row is not None:
                    emitted = await self._after_apply(conn, row, data)
                    return ApplyResult(ApplyOutcome.APPLIED, data.id, data.v, row=row, emitted=emitted)
                return await self._classify_miss(conn, data)
        except Exception as e:
            # Includes unique violations: an update is never a duplicate create
            logger.warning(
                "Update of %s %s to v%d failed, will retry: %s",
                self.handler.entity, data.id, data.v, e,
                exc_info=True
            )
            return ApplyResult(ApplyOutcome.FAILED, data.id, data.v, error=str(e))

    async def _classify_miss(self, conn: DatabaseConnection, data: ChangeData) -> ApplyResult:
        """The row was not at v - 1: decide between duplicate, stale and not yet."""
        existing = await self.handler.find_entity(conn, VersionKey(data.id, data.v))
        if existing is not None:
            logger.debug("%s %s already at v%d", self.handler.entity, data.id, data.v)
            return ApplyResult(ApplyOutcome.DUPLICATE, data.id, data.v, row=existing)

        current = await self.handler.current_version(conn, data.id)
        if current is None:
            logger.info(
                "%s %s not found for v%d, waiting for create",
                self.handler.entity, data.id, data.v
            )
            return ApplyResult(ApplyOutcome.NOT_FOUND, data.id, data.v)

        if current > data.v:
            logger.warning(
                "Stale %s change %s v%d, local is v%d, acking without apply",
                self.handler.entity, data.id, data.v, current,
                extra={"entity_id": data.id, "v": data.v, "local_v": current}
            )
            return ApplyResult(ApplyOutcome.STALE, data.id, data.v)

        logger.info(
            "%s %s at v%d, v%d arrived early",
            self.handler.entity, data.id, current, data.v
        )
        return ApplyResult(ApplyOutcome.OUT_OF_ORDER, data.id, data.v)

    async def _exists(self, entity_id: str) -> bool:
        async with self.db.connection() as conn:
            return await self.handler.current_version(conn, entity_id) is not None

    async def _after_apply(self, conn: DatabaseConnection, row: Any, data: ChangeData) -> int:
        """Run the handler's cascade; returns the number of change records it wrote."""
        outbox = OutboxWriter(conn, self.outbox_table) if self.outbox_table else None
        await self.handler.after_apply(conn, row, data, outbox)
        return len(outbox.records) if outbox is not None else 0

    def _finish(self, result: ApplyResult) -> ApplyResult:
        record_counter(
            "changes_applied_total",
            1,
            {"entity": self.handler.entity, "outcome": result.outcome.value}
        )
        return result
