"""
Message transport interfaces and the in-memory broker.
"""

from .base import Message, MessageBatch, MessageStatus, Transport
from .memory import InMemoryTransport

__all__ = [
    "InMemoryTransport",
    "Message",
    "MessageBatch",
    "MessageStatus",
    "Transport",
]
