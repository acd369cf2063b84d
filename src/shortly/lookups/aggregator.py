"""
Lookup Aggregator

Rolls lookup facts up into a per-link counter and last-lookup timestamp.

Facts arrive unordered and possibly duplicated. A batch is grouped by
entity and each group is handled on its own:
1. Drop timestamps repeated within the group
2. Drop timestamps already recorded for the entity
3. In one transaction: insert the net-new fact rows, add their number to
   the counter and move the last-lookup timestamp forward
4. Ack the group's messages once that transaction committed

A failing group is retried as a whole and leaves no partial state; the
other groups of the batch are unaffected.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..database.adapter import DatabaseAdapter, DatabaseConnection, placeholders
from ..errors import EntityNotFoundError
from ..observability import create_span, record_counter
from ..timeutil import parse_timestamp
from ..transport.base import Message, MessageBatch
from .models import Aggregate, AggregateUpdate, LookupFact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregateTarget:
    """Tables and columns the aggregator writes to."""
    fact_table: str = "link_lookups"
    fact_key: str = "link_id"
    fact_time: str = "occurred_at"
    table: str = "links"
    count_column: str = "lookup_count"
    last_column: str = "last_lookup_at"
    resource: str = "Link"


class LookupAggregator:
    """
    Usage:
        aggregator = LookupAggregator(db)
        updates = await aggregator.aggregate(batch)
        await notifier.notify(updates)
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        target: Optional[AggregateTarget] = None,
        recent_limit: int = 5
    ):
        self.db = db
        self.target = target or AggregateTarget()
        self.recent_limit = recent_limit

    async def aggregate(self, batch: MessageBatch) -> List[AggregateUpdate]:
        """
        Record a batch of facts and settle its messages.

        Returns:
            One AggregateUpdate per entity whose rollup changed
        """
        updates = []
        for entity_id, items in self._group(batch.messages).items():
            messages = [message for message, _ in items]
            try:
                update = await self.record_group(entity_id, [fact for _, fact in items])
            except Exception as e:
                logger.warning(
                    "Lookup group %s (%d facts) failed, will retry: %s",
                    entity_id, len(items), e,
                    exc_info=not isinstance(e, EntityNotFoundError),
                    extra={"entity_id": entity_id}
                )
                for message in messages:
                    message.retry()
                continue

            # Committed, the acks are safe now
            for message in messages:
                message.ack()
            if update is not None:
                updates.append(update)

        logger.info(
            "Aggregated %d lookup messages from %s into %d updates",
            len(batch), batch.queue, len(updates)
        )
        return updates

    def _group(self, messages: Sequence[Message]) -> Dict[str, List[Tuple[Message, LookupFact]]]:
        groups: Dict[str, List[Tuple[Message, LookupFact]]] = OrderedDict()
        for message in messages:
            try:
                fact = LookupFact.model_validate(message.body)
            except ValueError as e:
                logger.error(f"Undecodable lookup fact {message.id}: {e}")
                message.retry()
                continue
            groups.setdefault(fact.entity_id, []).append((message, fact))
        return groups

    async def record_group(self, entity_id: str, facts: Sequence[LookupFact]) -> Optional[AggregateUpdate]:
        """
        Record the facts of one entity in one transaction.

        Returns:
            The update, or None when every fact was already recorded

        Raises:
            EntityNotFoundError: if the entity has no row to roll up into
        """
        timestamps = list(dict.fromkeys(fact.timestamp for fact in facts))

        with create_span(
            "lookups.record_group",
            {"entity.id": entity_id, "lookups.received": len(facts)}
        ) as span:
            async with self.db.transaction() as conn:
                recorded = await self._recorded(conn, entity_id, timestamps)
                net_new = [t for t in timestamps if t not in recorded]
                span.set_attribute("lookups.net_new", len(net_new))
                if not net_new:
                    logger.debug("All %d lookups of %s already recorded", len(facts), entity_id)
                    return None

                await conn.executemany(
                    f"INSERT INTO {self.target.fact_table} ({self.target.fact_key}, {self.target.fact_time}) "
                    f"VALUES ($1, $2)",
                    [(entity_id, t) for t in net_new]
                )
                row = await self._roll_up(conn, entity_id, len(net_new), max(net_new))

        record_counter("lookups_recorded_total", len(net_new))
        return AggregateUpdate(
            aggregate=Aggregate(
                entity_id=entity_id,
                count=int(row[self.target.count_column]),
                last_fact_at=_optional_timestamp(row[self.target.last_column]),
            ),
            snapshot=row,
            recent_timestamps=sorted(net_new, reverse=True)[:self.recent_limit],
            recorded=len(net_new),
        )

    async def _recorded(
        self,
        conn: DatabaseConnection,
        entity_id: str,
        timestamps: List[datetime]
    ) -> set:
        t = self.target
        rows = await conn.fetch(
            f"""
            SELECT {t.fact_time} AS ts FROM {t.fact_table}
            WHERE {t.fact_key} = $1 AND {t.fact_time} IN ({placeholders(2, len(timestamps))})
            """,
            entity_id,
            *timestamps
        )
        return {parse_timestamp(row["ts"]) for row in rows}

    async def _roll_up(
        self,
        conn: DatabaseConnection,
        entity_id: str,
        added: int,
        newest: datetime
    ) -> Dict:
        """
        Add the net-new count and move the last lookup time forward.

        The stored last lookup time becomes the newest net-new timestamp only
        when that is later, so a late fact never moves it back.
        """
        t = self.target
        row = await conn.fetchrow(
            f"""
            UPDATE {t.table}
            SET {t.count_column} = {t.count_column} + $1,
                {t.last_column} = CASE
                    WHEN {t.last_column} IS NULL OR {t.last_column} < $2 THEN $2
                    ELSE {t.last_column}
                END
            WHERE id = $3
            RETURNING *
            """,
            added,
            newest,
            entity_id
        )
        if row is None:
            # Raising rolls back the inserted facts
            raise EntityNotFoundError(t.resource, entity_id)
        return row


def _optional_timestamp(value) -> Optional[datetime]:
    return parse_timestamp(value) if value is not None else None
