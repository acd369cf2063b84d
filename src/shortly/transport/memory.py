"""
In-Memory Transport

A single-process broker with the delivery semantics the replication code
relies on: at-least-once delivery, per-message ack/retry, messages left
unsettled are redelivered, and a message that reaches `max_deliveries`
without an ack is moved to its dead-letter topic.

Used for local runs and tests.
"""

import copy
import logging
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Deque, Dict, List

from ..errors import PublishError
from ..topics import dead_letter_topic
from .base import Message, MessageBatch, Transport

logger = logging.getLogger(__name__)

BatchHandler = Callable[[MessageBatch], Awaitable[Any]]


class InMemoryTransport(Transport):
    """
    Per-topic FIFO queues with redelivery and dead-lettering.

    Usage:
        transport = InMemoryTransport(max_deliveries=3)
        await transport.send("shortly-users-links", body)
        await transport.deliver("shortly-users-links", consumer.sync)
    """

    def __init__(
        self,
        max_deliveries: int = 3,
        dead_letter_for: Callable[[str], str] = dead_letter_topic,
    ):
        self.max_deliveries = max_deliveries
        self._dead_letter_for = dead_letter_for
        self._queues: Dict[str, Deque[Message]] = defaultdict(deque)
        self._published: Dict[str, List[Any]] = defaultdict(list)
        self.closed = False

    async def send(self, topic: str, body: Any) -> None:
        if self.closed:
            raise PublishError(topic, "transport closed")
        body = copy.deepcopy(body)
        self._queues[topic].append(Message(body))
        self._published[topic].append(body)

    def published(self, topic: str) -> List[Any]:
        """Every body ever sent to `topic`, including redelivered ones once."""
        return list(self._published[topic])

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    def receive(self, topic: str, max_batch: int = 10) -> MessageBatch:
        """Take up to `max_batch` messages off a topic."""
        queue = self._queues[topic]
        messages = []
        while queue and len(messages) < max_batch:
            messages.append(queue.popleft())
        return MessageBatch(topic, messages)

    def settle(self, batch: MessageBatch) -> None:
        """Drop acked messages, requeue the rest or dead-letter them."""
        for message in batch.messages:
            if message.acked:
                continue
            if message.attempts >= self.max_deliveries:
                target = self._dead_letter_for(batch.queue)
                logger.warning(
                    "Message %s exhausted %d deliveries on %s, moving to %s",
                    message.id, message.attempts, batch.queue, target
                )
                self._queues[target].append(Message(message.body))
                continue
            redelivery = Message(message.body, id=message.id, attempts=message.attempts + 1)
            self._queues[batch.queue].append(redelivery)

    async def deliver(self, topic: str, handler: BatchHandler, max_batch: int = 10) -> MessageBatch:
        """Deliver one batch to `handler` and settle it."""
        batch = self.receive(topic, max_batch)
        if not batch.messages:
            return batch
        try:
            await handler(batch)
        except Exception:
            # Like a real broker: a crashed handler gets the batch again
            logger.exception("Handler for %s raised, unsettled messages will be redelivered", topic)
        finally:
            self.settle(batch)
        return batch

    async def drain(
        self,
        topic: str,
        handler: BatchHandler,
        max_batch: int = 10,
        max_rounds: int = 100,
    ) -> int:
        """Deliver until the topic is empty or `max_rounds` batches ran."""
        rounds = 0
        while self.pending(topic) and rounds < max_rounds:
            await self.deliver(topic, handler, max_batch)
            rounds += 1
        return rounds
