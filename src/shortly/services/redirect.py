"""
Lookups Service

Resolves short codes against a link replica and emits a lookup fact per
successful resolution. Facts go straight to the transport without an
outbox: losing one now and then only undercounts analytics.
"""

import logging
from typing import Optional

from ..config import ReplicationConfig, get_config
from ..consumer import ChangeConsumer, SqlReplicaHandler
from ..database.adapter import DatabaseAdapter
from ..lookups.models import LookupFact
from ..timeutil import utcnow
from ..topics import Topic
from ..transport.base import Transport
from ..workers.queue_handler import QueueHandler
from .models import Link, LinkChange
from .runtime import ServiceRuntime

logger = logging.getLogger(__name__)


class RedirectLinkHandler(SqlReplicaHandler[LinkChange, Link]):
    entity = "link"
    table = "links"
    columns = ("short", "long", "expires_at")
    change_model = LinkChange
    row_model = Link


class Redirector:
    """
    Usage:
        target = await redirector.resolve("abc123")
        if target is None:
            return redirect_to_404()
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        transport: Transport,
        topic: str = Topic.LOOKUPS_ANALYTICS.value
    ):
        self.db = db
        self.transport = transport
        self.topic = topic

    async def resolve(self, short: str) -> Optional[str]:
        """Long URL of a live, unexpired link, recording the lookup."""
        row = await self.db.fetchrow(
            "SELECT * FROM links WHERE short = $1 AND deleted_at IS NULL",
            short
        )
        if row is None:
            return None

        link = Link.model_validate(row)
        now = utcnow()
        if link.expires_at is not None and link.expires_at <= now:
            return None

        fact = LookupFact(entity_id=link.id, timestamp=now)
        try:
            await self.transport.send(self.topic, fact.to_payload())
        except Exception as e:
            logger.warning(f"Lookup fact for {link.id} dropped: {e}")
        return link.long


def build_lookups_service(
    db: DatabaseAdapter,
    transport: Transport,
    config: Optional[ReplicationConfig] = None
) -> ServiceRuntime:
    """Lookups: link replica for redirects, emits lookup facts. No outbox."""
    runtime = ServiceRuntime(
        name="lookups",
        db=db,
        transport=transport,
        queue_handler=QueueHandler("lookups"),
        config=config or get_config(),
        store=Redirector(db, transport),
    )
    links = ChangeConsumer(db, RedirectLinkHandler())
    runtime.queue_handler.route(Topic.LINKS_LOOKUPS.value, links.sync)
    return runtime
