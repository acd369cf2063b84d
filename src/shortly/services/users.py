"""
Users Service

Owns users. Every user mutation is committed together with change records
for the auth, links and analytics replicas. Keeps a reduced link replica
to refuse deleting users who still have live links.
"""

import json
import logging
from typing import Iterable, List, Optional, Sequence
from uuid import uuid4

from ..config import ReplicationConfig, get_config
from ..consumer import ChangeConsumer, SqlReplicaHandler
from ..database.adapter import DatabaseAdapter, DatabaseConnection, placeholders
from ..errors import EntityNotFoundError
from ..outbox.dispatcher import OutboxDispatcher
from ..outbox.transactional import TransactionalPublisher
from ..timeutil import utcnow
from ..topics import USER_UPDATE_TOPICS, Topic
from ..transport.base import Transport
from ..workers.queue_handler import QueueHandler
from .models import LinkChange, LinkReplica, User
from .runtime import ServiceRuntime, outbox_parts

logger = logging.getLogger(__name__)

# Scopes every user keeps whatever an update asks for
MINIMAL_SCOPES = ("c-link",)

_LIVE_LINKS = """
    SELECT DISTINCT user_id FROM links
    WHERE user_id IN ({ids}) AND deleted_at IS NULL
      AND (expires_at IS NULL OR expires_at > ${now})
"""


class UserHasLinksError(Exception):
    """The user still owns live links and cannot be deleted."""

    def __init__(self, user_ids: Sequence[str]):
        self.user_ids = list(user_ids)
        super().__init__(f"Users with live links cannot be deleted: {', '.join(self.user_ids)}")


def normalize_scopes(scopes: Iterable[str]) -> List[str]:
    return sorted(set(scopes) | set(MINIMAL_SCOPES))


class LinkReplicaHandler(SqlReplicaHandler[LinkChange, LinkReplica]):
    entity = "link"
    table = "links"
    columns = ("user_id", "expires_at")
    change_model = LinkChange
    row_model = LinkReplica


class UserStore:
    """
    Mutations of the users table, each paired with its change records.

    Usage:
        store = UserStore(db, dispatcher=dispatcher)
        user = await store.create_user("alice", password_hash)
        await store.delete_user(user.id)
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

    async def get_user(self, user_id: str) -> Optional[User]:
        row = await self.db.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return User.model_validate(row) if row else None

    async def create_user(
        self,
        username: str,
        password: str,
        scopes: Iterable[str] = ()
    ) -> User:
        """Create a user at v0. `password` is stored as given (a hash)."""
        async with self._publisher() as txn:
            row = await txn.conn.fetchrow(
                """
                INSERT INTO users (id, v, created_at, username, password, scopes)
                VALUES ($1, 0, $2, $3, $4, $5)
                RETURNING *
                """,
                str(uuid4()),
                utcnow(),
                username,
                password,
                json.dumps(normalize_scopes(scopes))
            )
            user = User.model_validate(row)
            await txn.emit(USER_UPDATE_TOPICS, user.to_payload())

        logger.info("Created user %s", user.id, extra={"entity_id": user.id})
        return user

    async def update_user(
        self,
        user_id: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None
    ) -> User:
        """
        Change fields of a live user, bumping v.

        The change records carry only the changed fields plus id and v.
        """
        changes = {}
        if username is not None:
            changes["username"] = username
        if password is not None:
            changes["password"] = password
        if scopes is not None:
            changes["scopes"] = normalize_scopes(scopes)
        if not changes:
            raise ValueError("Nothing to update")

        assignments = []
        params = []
        for name, value in changes.items():
            params.append(json.dumps(value) if name == "scopes" else value)
            assignments.append(f"{name} = ${len(params)}")
        params.append(user_id)

        async with self._publisher() as txn:
            row = await txn.conn.fetchrow(
                f"""
                UPDATE users SET {', '.join(assignments)}, v = v + 1
                WHERE id = ${len(params)} AND deleted_at IS NULL
                RETURNING *
                """,
                *params
            )
            if row is None:
                raise EntityNotFoundError("User", user_id)
            user = User.model_validate(row)
            await txn.emit(
                USER_UPDATE_TOPICS,
                {**user.to_payload(include=changes.keys()), "id": user.id, "v": user.v}
            )

        logger.info("Updated user %s to v%d", user.id, user.v, extra={"entity_id": user.id})
        return user

    async def delete_user(self, user_id: str) -> User:
        """Soft delete a user without live links."""
        deleted = await self.delete_users([user_id])
        if not deleted:
            raise EntityNotFoundError("User", user_id)
        return deleted[0]

    async def delete_users(self, user_ids: Sequence[str]) -> List[User]:
        """
        Soft delete the given users that have no live links.

        Raises:
            UserHasLinksError: if every requested user still has live links
        """
        if not user_ids:
            return []

        async with self._publisher() as txn:
            blocked = await self._users_with_live_links(txn.conn, user_ids)
            deletable = [uid for uid in user_ids if uid not in blocked]
            if not deletable:
                raise UserHasLinksError(sorted(blocked))

            now = utcnow()
            rows = await txn.conn.fetch(
                f"""
                UPDATE users SET deleted_at = $1, v = v + 1
                WHERE id IN ({placeholders(2, len(deletable))}) AND deleted_at IS NULL
                RETURNING *
                """,
                now,
                *deletable
            )
            users = [User.model_validate(row) for row in rows]
            for user in users:
                await txn.emit(
                    USER_UPDATE_TOPICS,
                    {"id": user.id, "v": user.v, "deletedAt": user.deleted_at.isoformat()}
                )

        if blocked:
            logger.info("Skipped deleting users with live links: %s", sorted(blocked))
        logger.info("Deleted %d users", len(users))
        return users

    async def _users_with_live_links(self, conn: DatabaseConnection, user_ids: Sequence[str]) -> set:
        # Checked against the link replica, which can lag the links service
        query = _LIVE_LINKS.format(
            ids=placeholders(1, len(user_ids)),
            now=len(user_ids) + 1
        )
        rows = await conn.fetch(query, *user_ids, utcnow())
        return {row["user_id"] for row in rows}


def build_users_service(
    db: DatabaseAdapter,
    transport: Transport,
    config: Optional[ReplicationConfig] = None
) -> ServiceRuntime:
    """Users: owns users, replicates links, handles the users dead-letter queue."""
    config = config or get_config()
    dispatcher, dead_letters = outbox_parts(db, transport, config)

    runtime = ServiceRuntime(
        name="users",
        db=db,
        transport=transport,
        queue_handler=QueueHandler("users"),
        config=config,
        dispatcher=dispatcher,
        dead_letters=dead_letters,
    )
    runtime.store = UserStore(db, dispatcher=runtime.after_commit, table=config.outbox_table)

    links = ChangeConsumer(db, LinkReplicaHandler())
    runtime.queue_handler.route(Topic.LINKS_USERS.value, links.sync)
    runtime.queue_handler.route(Topic.USERS_DLQ.value, dead_letters.handle)
    return runtime
