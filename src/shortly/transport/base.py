"""
Transport Abstraction

The message transport is an at-least-once delivery service with per-message
ack/retry and a dead-letter policy of its own. Replication code only sees
these interfaces; the broker behind them is deployment specific.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Sequence
from uuid import uuid4

from ..timeutil import utcnow


class MessageStatus(str, Enum):
    """Settlement state of a delivered message."""
    PENDING = "pending"
    ACKED = "acked"
    RETRY = "retry"


class Message:
    """
    One delivered message.

    A handler settles it with ack() once the work it implies is durable,
    or retry() to ask the transport for redelivery. The last call wins.
    """

    def __init__(
        self,
        body: Any,
        id: Optional[str] = None,
        attempts: int = 1,
        timestamp: Optional[datetime] = None,
    ):
        self.id = id or str(uuid4())
        self.body = body
        self.attempts = attempts
        self.timestamp = timestamp or utcnow()
        self.status = MessageStatus.PENDING
        self.retry_delay: Optional[int] = None

    def ack(self) -> None:
        self.status = MessageStatus.ACKED

    def retry(self, delay_seconds: Optional[int] = None) -> None:
        self.status = MessageStatus.RETRY
        self.retry_delay = delay_seconds

    @property
    def acked(self) -> bool:
        return self.status == MessageStatus.ACKED

    def __repr__(self) -> str:
        return f"Message(id={self.id}, attempts={self.attempts}, status={self.status.value})"


class MessageBatch:
    """A batch of messages delivered from one queue."""

    def __init__(self, queue: str, messages: Sequence[Message]):
        self.queue = queue
        self.messages: List[Message] = list(messages)

    def ack_all(self) -> None:
        for message in self.messages:
            message.ack()

    def retry_all(self, delay_seconds: Optional[int] = None) -> None:
        for message in self.messages:
            message.retry(delay_seconds)

    def __len__(self) -> int:
        return len(self.messages)


class Transport(ABC):
    """Producer side of the message transport."""

    @abstractmethod
    async def send(self, topic: str, body: Any) -> None:
        """
        Publish one message.

        Raises:
            PublishError: if the transport did not accept the message
        """

    async def send_batch(self, topic: str, bodies: Sequence[Any]) -> None:
        """Publish several messages to one topic."""
        for body in bodies:
            await self.send(topic, body)
