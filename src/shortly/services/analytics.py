"""
Analytics Service

Keeps user and link replicas and rolls lookup facts up into the link
replica. Fresh rollups are forwarded to the live analytics topic.
"""

from typing import List, Optional

from ..config import ReplicationConfig, get_config
from ..consumer import ChangeConsumer, SqlReplicaHandler
from ..database.adapter import DatabaseAdapter
from ..lookups import AggregateUpdate, LiveAnalyticsNotifier, LookupAggregator
from ..topics import Topic
from ..transport.base import MessageBatch, Transport
from ..workers.queue_handler import QueueHandler
from .models import AnalyticsLink, LinkChange, UserChange, UserReplica
from .runtime import ServiceRuntime


class AnalyticsUserHandler(SqlReplicaHandler[UserChange, UserReplica]):
    """Only existence and deletion of users matter here."""

    entity = "user"
    table = "users"
    columns = ()
    change_model = UserChange
    row_model = UserReplica


class AnalyticsLinkHandler(SqlReplicaHandler[LinkChange, AnalyticsLink]):
    entity = "link"
    table = "links"
    columns = ("short", "long", "user_id", "expires_at")
    change_model = LinkChange
    row_model = AnalyticsLink


class LookupPipeline:
    """Aggregates a lookup batch, then notifies live analytics."""

    def __init__(self, aggregator: LookupAggregator, notifier: LiveAnalyticsNotifier):
        self.aggregator = aggregator
        self.notifier = notifier

    async def handle(self, batch: MessageBatch) -> List[AggregateUpdate]:
        updates = await self.aggregator.aggregate(batch)
        await self.notifier.notify(updates)
        return updates


def build_analytics_service(
    db: DatabaseAdapter,
    transport: Transport,
    config: Optional[ReplicationConfig] = None
) -> ServiceRuntime:
    """Analytics: user and link replicas, lookup aggregation. No outbox."""
    config = config or get_config()
    runtime = ServiceRuntime(
        name="analytics",
        db=db,
        transport=transport,
        queue_handler=QueueHandler("analytics"),
        config=config,
    )

    users = ChangeConsumer(db, AnalyticsUserHandler())
    links = ChangeConsumer(db, AnalyticsLinkHandler())
    lookups = LookupPipeline(
        LookupAggregator(db, recent_limit=config.lookup_recent_limit),
        LiveAnalyticsNotifier(transport)
    )
    runtime.store = lookups

    runtime.queue_handler.route(Topic.USERS_ANALYTICS.value, users.sync)
    runtime.queue_handler.route(Topic.LINKS_ANALYTICS.value, links.sync)
    runtime.queue_handler.route(Topic.LOOKUPS_ANALYTICS.value, lookups.handle)
    return runtime
