"""
Change consumer: idempotent, version-ordered replica updates.
"""

from .engine import ChangeConsumer
from .handler import ReplicaHandler, SqlReplicaHandler, encode_column
from .models import ApplyResult, ChangeData, ReplicaRow, SyncReport, VersionKey

__all__ = [
    "ApplyResult",
    "ChangeConsumer",
    "ChangeData",
    "ReplicaHandler",
    "ReplicaRow",
    "SqlReplicaHandler",
    "SyncReport",
    "VersionKey",
    "encode_column",
]
