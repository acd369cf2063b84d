"""
Replication Error Taxonomy

Error codes and apply outcomes shared by the dispatcher, the change
consumer and the lookup aggregator. None of these reach a user; they
decide whether a message is acked or left for redelivery.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Replication error codes."""

    DUPLICATE_APPLY = "DUPLICATE_APPLY"
    OUT_OF_ORDER_APPLY = "OUT_OF_ORDER_APPLY"
    NOT_FOUND = "NOT_FOUND"
    PUBLISH_FAILURE = "PUBLISH_FAILURE"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    INVALID_MESSAGE = "INVALID_MESSAGE"


# Codes that mean "already applied": the message is acked
ACKABLE_CODES = {ErrorCode.DUPLICATE_APPLY}


class ReplicationError(Exception):
    """Base class for replication errors."""

    code: ErrorCode = ErrorCode.PERSISTENCE_FAILURE

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.message = message
        self.entity_id = entity_id
        super().__init__(message)

    @property
    def transient(self) -> bool:
        return self.code not in ACKABLE_CODES


class PublishError(ReplicationError):
    """The transport refused or failed to accept a message."""

    code = ErrorCode.PUBLISH_FAILURE

    def __init__(self, topic: str, reason: str):
        super().__init__(f"Publish to {topic} failed: {reason}")
        self.topic = topic
        self.reason = reason


class EntityNotFoundError(ReplicationError):
    """The entity a fact or update targets does not exist locally yet."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, entity_id: str):
        super().__init__(f"{resource} with ID '{entity_id}' not found", entity_id)
        self.resource = resource


class ApplyOutcome(str, Enum):
    """Result of applying one change message to a replica."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    OUT_OF_ORDER = "out_of_order"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    INVALID = "invalid"

    @property
    def should_ack(self) -> bool:
        return self in (ApplyOutcome.APPLIED, ApplyOutcome.DUPLICATE, ApplyOutcome.STALE)

    @property
    def error_code(self) -> Optional[ErrorCode]:
        return _OUTCOME_CODES.get(self)


_OUTCOME_CODES = {
    ApplyOutcome.DUPLICATE: ErrorCode.DUPLICATE_APPLY,
    ApplyOutcome.STALE: ErrorCode.DUPLICATE_APPLY,
    ApplyOutcome.OUT_OF_ORDER: ErrorCode.OUT_OF_ORDER_APPLY,
    ApplyOutcome.NOT_FOUND: ErrorCode.NOT_FOUND,
    ApplyOutcome.FAILED: ErrorCode.PERSISTENCE_FAILURE,
    ApplyOutcome.INVALID: ErrorCode.INVALID_MESSAGE,
}
