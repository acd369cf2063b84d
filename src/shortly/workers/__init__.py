"""
Workers: batch routing and the replication pump.
"""

from .queue_handler import QueueHandler
from .pump import ReplicationPump

__all__ = [
    "QueueHandler",
    "ReplicationPump",
]
