"""
Entity Models

Change payloads and stored rows of users and links, per service.
"""

import json
from typing import Any, List, Optional

from pydantic import field_validator

from ..consumer.models import ChangeData, ReplicaRow
from ..timeutil import UtcDatetime


def _json_list(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class UserChange(ChangeData):
    username: Optional[str] = None
    password: Optional[str] = None
    scopes: Optional[List[str]] = None

    @field_validator("scopes", mode="before")
    @classmethod
    def parse_scopes(cls, value: Any) -> Any:
        return _json_list(value)


class LinkChange(ChangeData):
    short: Optional[str] = None
    long: Optional[str] = None
    user_id: Optional[str] = None
    expires_at: Optional[UtcDatetime] = None


class User(ReplicaRow):
    """A user with credentials (users service origin, auth replica)."""

    username: Optional[str] = None
    password: Optional[str] = None
    scopes: List[str] = []

    @field_validator("scopes", mode="before")
    @classmethod
    def parse_scopes(cls, value: Any) -> Any:
        if value is None:
            return []
        return _json_list(value)


class UserReplica(ReplicaRow):
    """User as the links and analytics services keep it."""

    username: Optional[str] = None


class Link(ReplicaRow):
    """A link (links service origin, lookups replica)."""

    short: Optional[str] = None
    long: Optional[str] = None
    user_id: Optional[str] = None
    expires_at: Optional[UtcDatetime] = None


class LinkReplica(ReplicaRow):
    """Link as the users service keeps it, for ownership checks."""

    user_id: Optional[str] = None
    expires_at: Optional[UtcDatetime] = None


class AnalyticsLink(Link):
    """Analytics link replica carrying the lookup rollup."""

    lookup_count: int = 0
    last_lookup_at: Optional[UtcDatetime] = None
