"""
Outbox Models

Row and wire shapes of change records.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..timeutil import UtcDatetime, utcnow


def _decode_payload(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class ChangeEnvelope(BaseModel):
    """
    Message body published for one change record.

    `record_id` correlates the message with its origin outbox row so the
    dead-letter handler can mark it failed.
    """

    record_id: Optional[int] = None
    topic: str
    payload: Dict[str, Any]

    @field_validator("payload", mode="before")
    @classmethod
    def parse_payload(cls, value: Any) -> Any:
        return _decode_payload(value)

    @classmethod
    def from_body(cls, body: Any) -> "ChangeEnvelope":
        """Validate a message body (dict or JSON text)."""
        if isinstance(body, (str, bytes)):
            return cls.model_validate_json(body)
        return cls.model_validate(body)


class OutboxRecord(BaseModel):
    """A row of a service's change_records table."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    topic: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    sent_at: Optional[UtcDatetime] = None
    failed_at: Optional[UtcDatetime] = None

    @field_validator("payload", mode="before")
    @classmethod
    def parse_payload(cls, value: Any) -> Any:
        return _decode_payload(value)

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None

    def to_envelope(self) -> ChangeEnvelope:
        return ChangeEnvelope(record_id=self.id, topic=self.topic, payload=self.payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "payload": self.payload,
            "created_at": _iso(self.created_at),
            "sent_at": _iso(self.sent_at),
            "failed_at": _iso(self.failed_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
