"""
Transactional Outbox

Change records are written in the transaction that mutates an entity and
published later by a dispatcher.

Usage:
    from shortly.outbox import TransactionalPublisher

    async with TransactionalPublisher(db, dispatcher=dispatcher) as txn:
        row = await txn.conn.fetchrow("INSERT INTO links ... RETURNING *", ...)
        await txn.emit(LINK_UPDATE_TOPICS, payload)
"""

from .dispatcher import OutboxDispatcher
from .dlq import DeadLetterHandler, DLQEntry
from .lifecycle import outbox_lifespan
from .models import ChangeEnvelope, OutboxRecord
from .processor import (
    OutboxProcessor,
    get_outbox_processor,
    start_outbox_processor,
    stop_outbox_processor,
)
from .transactional import TransactionalPublisher, dispatch_committed
from .writer import OutboxWriter, serialize_payload

__all__ = [
    "ChangeEnvelope",
    "DeadLetterHandler",
    "DLQEntry",
    "OutboxDispatcher",
    "OutboxProcessor",
    "OutboxRecord",
    "OutboxWriter",
    "TransactionalPublisher",
    "dispatch_committed",
    "get_outbox_processor",
    "outbox_lifespan",
    "serialize_payload",
    "start_outbox_processor",
    "stop_outbox_processor",
]
