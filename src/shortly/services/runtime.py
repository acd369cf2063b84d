"""
Service Runtime

Everything one service process needs for replication, assembled by the
service builders.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from ..config import ReplicationConfig
from ..database.adapter import DatabaseAdapter
from ..database.schema import create_schema
from ..outbox.dispatcher import OutboxDispatcher
from ..outbox.dlq import DeadLetterHandler
from ..transport.base import Transport
from ..workers.queue_handler import QueueHandler

logger = logging.getLogger(__name__)


@dataclass
class ServiceRuntime:
    """
    Replication wiring of one service.

    `store` is the service's own mutator, if it owns an entity type.
    `dispatcher` and `dead_letters` exist only for services with an outbox.
    """
    name: str
    db: DatabaseAdapter
    transport: Transport
    queue_handler: QueueHandler
    config: ReplicationConfig
    dispatcher: Optional[OutboxDispatcher] = None
    dead_letters: Optional[DeadLetterHandler] = None
    store: Any = None

    @property
    def consumes(self) -> List[str]:
        return self.queue_handler.queues

    @property
    def after_commit(self) -> Optional[OutboxDispatcher]:
        """Dispatcher to sweep with after a commit, if configured."""
        if self.config.dispatch_after_commit:
            return self.dispatcher
        return None

    async def setup(self) -> None:
        """Connect and create the service's tables."""
        await self.db.connect()
        await create_schema(self.db, self.name, self.config.outbox_table)
        logger.info(f"Service {self.name} ready, consuming {self.consumes}")

    async def dispatch(self) -> int:
        """Run one outbox pass (0 for services without an outbox)."""
        if self.dispatcher is None:
            return 0
        return await self.dispatcher.dispatch()


def outbox_parts(
    db: DatabaseAdapter,
    transport: Transport,
    config: ReplicationConfig
) -> tuple:
    """Dispatcher and dead-letter handler over a service's outbox table."""
    dispatcher = OutboxDispatcher(
        db,
        transport,
        table=config.outbox_table,
        batch_size=config.batch_size
    )
    return dispatcher, DeadLetterHandler(db, table=config.outbox_table)
