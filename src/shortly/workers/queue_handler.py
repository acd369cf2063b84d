"""
Queue Handler

Routes a delivered batch to the handler registered for its queue. One
instance per service process; the transport calls it for every batch.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List

from ..observability import create_span
from ..transport.base import MessageBatch

logger = logging.getLogger(__name__)

BatchHandler = Callable[[MessageBatch], Awaitable[Any]]


class QueueHandler:
    """
    Usage:
        handler = QueueHandler("links")
        handler.route(Topic.USERS_LINKS.value, users_consumer.sync)
        handler.route(Topic.LINKS_DLQ.value, dead_letters.handle)

        await handler(batch)
    """

    def __init__(self, service: str):
        self.service = service
        self._routes: Dict[str, BatchHandler] = {}

    def route(self, queue: str, handler: BatchHandler) -> "QueueHandler":
        if queue in self._routes:
            raise ValueError(f"Queue {queue} already routed in {self.service}")
        self._routes[queue] = handler
        return self

    @property
    def queues(self) -> List[str]:
        return list(self._routes)

    async def __call__(self, batch: MessageBatch) -> Any:
        handler = self._routes.get(batch.queue)
        if handler is None:
            logger.error(
                "%s received %d messages from unrouted queue %s",
                self.service, len(batch), batch.queue
            )
            batch.retry_all()
            return None

        with create_span(
            "queue.batch",
            {"service": self.service, "queue": batch.queue, "batch.size": len(batch)}
        ):
            return await handler(batch)
