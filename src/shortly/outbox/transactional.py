"""
Transactional Change Publisher

Combines an entity mutation with its change records in a single
transaction: either both commit or both roll back.
"""

import logging
from typing import Any, List, Mapping, Optional, Sequence

from ..database.adapter import DatabaseAdapter, DatabaseConnection
from .dispatcher import OutboxDispatcher
from .models import OutboxRecord
from .writer import OutboxWriter

logger = logging.getLogger(__name__)


class TransactionalPublisher:
    """
    Opens a transaction and an outbox writer bound to it.

    Usage:
        async with TransactionalPublisher(db, dispatcher=dispatcher) as txn:
            row = await txn.conn.fetchrow("UPDATE users SET ... RETURNING *", ...)
            await txn.emit(USER_UPDATE_TOPICS, payload)
        # Both commit together or both roll back. With a dispatcher, a
        # sweep runs once the commit succeeded.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        table: str = "change_records",
        dispatcher: Optional[OutboxDispatcher] = None
    ):
        self.db = db
        self.table = table
        self.dispatcher = dispatcher
        self.conn: Optional[DatabaseConnection] = None
        self._tx = None
        self._writer: Optional[OutboxWriter] = None
        self._records: List[OutboxRecord] = []

    async def __aenter__(self) -> "TransactionalPublisher":
        self._tx = self.db.transaction()
        self.conn = await self._tx.__aenter__()
        self._writer = OutboxWriter(self.conn, self.table)
        self._records = []
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            await self._tx.__aexit__(exc_type, exc_val, exc_tb)
        except BaseException:
            self._records = []
            raise
        finally:
            self.conn = None
            self._tx = None

        if exc_type is not None:
            # Rolled back, the records are gone with the mutation
            self._records = []
            return False

        if self._records and self.dispatcher is not None:
            await dispatch_committed(self.dispatcher)
        return False

    async def emit(self, topics: Sequence[str], payload: Mapping[str, Any]) -> List[OutboxRecord]:
        """
        Append one change record per topic in the current transaction.

        Args:
            topics: Destination topics
            payload: Changed field set, including id and v

        Returns:
            The created OutboxRecords
        """
        records = await self._writer.write_many(topics, payload)
        self._records.extend(records)
        return records

    @property
    def emitted_records(self) -> List[OutboxRecord]:
        """Records written in this transaction."""
        return self._records.copy()


async def dispatch_committed(dispatcher: OutboxDispatcher) -> int:
    """
    Sweep the outbox after a commit.

    A failure here leaves the records unsent for the background processor;
    the mutation itself already committed.
    """
    try:
        return await dispatcher.dispatch()
    except Exception as e:
        logger.warning(f"Dispatch after commit failed, records stay queued: {e}")
        return 0
