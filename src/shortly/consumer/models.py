"""
Change Consumer Models

Decoded change payloads, replica rows and per-message apply results.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..errors import ApplyOutcome
from ..timeutil import UtcDatetime


class ChangeData(BaseModel):
    """
    Field set carried by a change record.

    Always has id and v. Every other field is optional: an update carries
    only what changed, and a soft delete is an update carrying deletedAt.
    Wire names are camelCase; snake_case is accepted too.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: str
    v: int = Field(ge=0)
    created_at: Optional[UtcDatetime] = None
    deleted_at: Optional[UtcDatetime] = None

    @property
    def is_create(self) -> bool:
        return self.v == 0

    def changed_fields(self) -> Dict[str, Any]:
        """Fields present in the payload, excluding id and v."""
        return self.model_dump(exclude_unset=True, exclude={"id", "v"})

    def to_payload(self) -> Dict[str, Any]:
        """Wire form: camelCase, only the fields that were set."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class ReplicaRow(BaseModel):
    """A locally stored copy of an entity."""

    model_config = ConfigDict(
        from_attributes=True,
        extra="ignore",
    )

    id: str
    v: int
    created_at: UtcDatetime
    deleted_at: Optional[UtcDatetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_payload(
        self,
        include: Optional[Iterable[str]] = None,
        exclude: Sequence[str] = ()
    ) -> Dict[str, Any]:
        """The row as a change payload with camelCase keys."""
        data = self.model_dump(
            mode="json",
            include=set(include) if include is not None else None,
            exclude=set(exclude)
        )
        return {to_camel(key): value for key, value in data.items()}


@dataclass(frozen=True)
class VersionKey:
    """Identifies an entity at one version."""
    id: str
    v: int


@dataclass
class ApplyResult:
    """Outcome of one message."""
    outcome: ApplyOutcome
    entity_id: Optional[str] = None
    version: Optional[int] = None
    row: Optional[ReplicaRow] = None
    error: Optional[str] = None
    emitted: int = 0

    @property
    def ack(self) -> bool:
        return self.outcome.should_ack


@dataclass
class SyncReport:
    """Results of one consumer batch, in message order."""
    queue: str
    results: List[ApplyResult] = field(default_factory=list)

    @property
    def replicated_ids(self) -> List[str]:
        """Ids of entities now present locally at the delivered version."""
        return [r.entity_id for r in self.results if r.ack and r.row is not None]

    @property
    def acked(self) -> int:
        return sum(1 for r in self.results if r.ack)

    @property
    def retried(self) -> int:
        return len(self.results) - self.acked

    @property
    def emitted(self) -> int:
        """Change records written by cascades of this batch."""
        return sum(r.emitted for r in self.results)

    def counts(self) -> Dict[str, int]:
        return dict(Counter(r.outcome.value for r in self.results))
