"""
Links Service

Owns links. Keeps a user replica, and a replicated user delete soft
deletes the user's live links in the same transaction, appending their
change records to the links outbox.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from ..config import ReplicationConfig, get_config
from ..consumer import ChangeConsumer, SqlReplicaHandler
from ..database.adapter import DatabaseAdapter, DatabaseConnection
from ..errors import EntityNotFoundError
from ..outbox.dispatcher import OutboxDispatcher
from ..outbox.transactional import TransactionalPublisher
from ..outbox.writer import OutboxWriter
from ..timeutil import utcnow
from ..topics import LINK_UPDATE_TOPICS, Topic
from ..transport.base import Transport
from ..workers.queue_handler import QueueHandler
from .models import Link, UserChange, UserReplica
from .runtime import ServiceRuntime, outbox_parts

logger = logging.getLogger(__name__)


def deletion_payload(link: Link) -> dict:
    return {"id": link.id, "v": link.v, "deletedAt": link.deleted_at.isoformat()}


class UserReplicaHandler(SqlReplicaHandler[UserChange, UserReplica]):
    """User replica of the links service, cascading deletes to links."""

    entity = "user"
    table = "users"
    columns = ("username",)
    change_model = UserChange
    row_model = UserReplica

    async def after_apply(
        self,
        conn: DatabaseConnection,
        row: UserReplica,
        data: UserChange,
        outbox: Optional[OutboxWriter]
    ) -> None:
        if not row.is_deleted:
            return
        if outbox is None:
            raise RuntimeError("User delete cascade needs an outbox")

        rows = await conn.fetch(
            """
            UPDATE links SET deleted_at = $1, v = v + 1
            WHERE user_id = $2 AND deleted_at IS NULL
            RETURNING *
            """,
            row.deleted_at,
            row.id
        )
        for link_row in rows:
            await outbox.write_many(LINK_UPDATE_TOPICS, deletion_payload(Link.model_validate(link_row)))

        if rows:
            logger.info(
                "Cascaded delete of user %s to %d links",
                row.id, len(rows),
                extra={"entity_id": row.id}
            )


class LinkStore:
    """
    Mutations of the links table, each paired with its change records.

    Usage:
        store = LinkStore(db, dispatcher=dispatcher)
        link = await store.create_link("abc123", "https://example.com", user_id, expires_at)
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        dispatcher: Optional[OutboxDispatcher] = None,
        table: str = "change_records"
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.table = table

    def _publisher(self) -> TransactionalPublisher:
        return TransactionalPublisher(self.db, self.table, self.dispatcher)

    async def get_link(self, link_id: str) -> Optional[Link]:
        row = await self.db.fetchrow("SELECT * FROM links WHERE id = $1", link_id)
        return Link.model_validate(row) if row else None

    async def create_link(
        self,
        short: str,
        long: str,
        user_id: str,
        expires_at: Optional[datetime] = None
    ) -> Link:
        """
        Create a link for a live, replicated user.

        Raises:
            EntityNotFoundError: if the user replica has no live user
            UniqueViolationError: if the short code is taken
        """
        async with self._publisher() as txn:
            owner = await txn.conn.fetchval(
                "SELECT id FROM users WHERE id = $1 AND deleted_at IS NULL",
                user_id
            )
            if owner is None:
                raise EntityNotFoundError("User", user_id)

            row = await txn.conn.fetchrow(
                """
                INSERT INTO links (id, v, created_at, short, long, user_id, expires_at)
                VALUES ($1, 0, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                str(uuid4()),
                utcnow(),
                short,
                long,
                user_id,
                expires_at
            )
            link = Link.model_validate(row)
            await txn.emit(LINK_UPDATE_TOPICS, link.to_payload())

        logger.info("Created link %s (%s)", link.id, link.short, extra={"entity_id": link.id})
        return link

    async def update_link(
        self,
        link_id: str,
        long: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ) -> Link:
        """Change the target or expiry of a live link, bumping v."""
        changes = {}
        if long is not None:
            changes["long"] = long
        if expires_at is not None:
            changes["expires_at"] = expires_at
        if not changes:
            raise ValueError("Nothing to update")

        assignments = [f"{name} = ${i}" for i, name in enumerate(changes, start=1)]
        params = [*changes.values(), link_id]

        async with self._publisher() as txn:
            row = await txn.conn.fetchrow(
                f"""
                UPDATE links SET {', '.join(assignments)}, v = v + 1
                WHERE id = ${len(params)} AND deleted_at IS NULL
                RETURNING *
                """,
                *params
            )
            if row is None:
                raise EntityNotFoundError("Link", link_id)
            link = Link.model_validate(row)
            await txn.emit(
                LINK_UPDATE_TOPICS,
                {**link.to_payload(include=changes.keys()), "id": link.id, "v": link.v}
            )

        logger.info("Updated link %s to v%d", link.id, link.v, extra={"entity_id": link.id})
        return link

    async def delete_link(self, link_id: str) -> Link:
        """Soft delete a live link."""
        async with self._publisher() as txn:
            row = await txn.conn.fetchrow(
                """
                UPDATE links SET deleted_at = $1, v = v + 1
                WHERE id = $2 AND deleted_at IS NULL
                RETURNING *
                """,
                utcnow(),
                link_id
            )
            if row is None:
                raise EntityNotFoundError("Link", link_id)
            link = Link.model_validate(row)
            await txn.emit(LINK_UPDATE_TOPICS, deletion_payload(link))

        logger.info("Deleted link %s", link.id, extra={"entity_id": link.id})
        return link


def build_links_service(
    db: DatabaseAdapter,
    transport: Transport,
    config: Optional[ReplicationConfig] = None
) -> ServiceRuntime:
    """Links: owns links, replicates users with cascade, handles the links dead-letter queue."""
    config = config or get_config()
    dispatcher, dead_letters = outbox_parts(db, transport, config)

    runtime = ServiceRuntime(
        name="links",
        db=db,
        transport=transport,
        queue_handler=QueueHandler("links"),
        config=config,
        dispatcher=dispatcher,
        dead_letters=dead_letters,
    )
    runtime.store = LinkStore(db, dispatcher=runtime.after_commit, table=config.outbox_table)

    users = ChangeConsumer(
        db,
        UserReplicaHandler(),
        outbox_table=config.outbox_table,
        dispatcher=runtime.after_commit
    )
    runtime.queue_handler.route(Topic.USERS_LINKS.value, users.sync)
    runtime.queue_handler.route(Topic.LINKS_DLQ.value, dead_letters.handle)
    return runtime
