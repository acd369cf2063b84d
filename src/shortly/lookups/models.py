"""
Lookup Models

A lookup fact records one dereference of a short link. Facts carry no id
and no version; the (entity_id, timestamp) pair is their only identity.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..timeutil import UtcDatetime


class LookupFact(BaseModel):
    """Wire shape: {"entityId": ..., "timestamp": ISO-8601}; linkId is accepted too."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    entity_id: str = Field(
        validation_alias=AliasChoices("entityId", "linkId", "entity_id"),
        serialization_alias="entityId",
    )
    timestamp: UtcDatetime

    @property
    def key(self) -> tuple:
        return (self.entity_id, self.timestamp)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class Aggregate:
    """Lookup rollup of one entity."""
    entity_id: str
    count: int
    last_fact_at: Optional[datetime]


@dataclass
class AggregateUpdate:
    """
    What one committed group produced.

    `snapshot` is the full updated row; `recent_timestamps` holds the most
    recent net-new timestamps, newest first.
    """
    aggregate: Aggregate
    snapshot: Dict[str, Any] = field(default_factory=dict)
    recent_timestamps: List[datetime] = field(default_factory=list)
    recorded: int = 0
