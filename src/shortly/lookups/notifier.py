"""
Live Analytics Notifier

Forwards fresh lookup rollups to the live analytics topic, where a
fan-out service pushes them to connected dashboards.
"""

import logging
from typing import Any, Dict, List, Sequence

from pydantic import TypeAdapter
from pydantic.alias_generators import to_camel

from ..topics import Topic
from ..transport.base import Transport
from .models import AggregateUpdate

logger = logging.getLogger(__name__)

_body_adapter = TypeAdapter(Dict[str, Any])

# Replication bookkeeping that dashboards never see
_HIDDEN = {"v", "deleted_at"}


def live_body(update: AggregateUpdate) -> Dict[str, Any]:
    """Link fields in camelCase without v and deletedAt, plus the recent timestamps."""
    body = {to_camel(key): value for key, value in update.snapshot.items() if key not in _HIDDEN}
    body["timestamps"] = list(update.recent_timestamps)
    return _body_adapter.dump_python(body, mode="json")


class LiveAnalyticsNotifier:
    """
    Publishes one message per updated, non-deleted link.

    Publishing is best effort: the facts are already committed and acked,
    so a failure is logged and dropped.
    """

    def __init__(self, transport: Transport, topic: str = Topic.ANALYTICS_LIVE.value):
        self.transport = transport
        self.topic = topic

    async def notify(self, updates: Sequence[AggregateUpdate]) -> int:
        bodies: List[Dict[str, Any]] = [
            live_body(update) for update in updates
            if not update.snapshot.get("deleted_at")
        ]
        if not bodies:
            return 0
        try:
            await self.transport.send_batch(self.topic, bodies)
        except Exception as e:
            logger.warning(f"Live analytics publish of {len(bodies)} updates failed: {e}")
            return 0
        return len(bodies)
