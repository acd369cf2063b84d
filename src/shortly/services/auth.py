"""
Auth Service

Keeps a user replica with credentials and scopes, read when issuing
tokens.
"""

from typing import Optional

from ..config import ReplicationConfig, get_config
from ..consumer import ChangeConsumer, SqlReplicaHandler
from ..database.adapter import DatabaseAdapter
from ..topics import Topic
from ..transport.base import Transport
from ..workers.queue_handler import QueueHandler
from .models import User, UserChange
from .runtime import ServiceRuntime


class AuthUserHandler(SqlReplicaHandler[UserChange, User]):
    entity = "user"
    table = "users"
    columns = ("username", "password", "scopes")
    change_model = UserChange
    row_model = User


class CredentialStore:
    """Read side of the auth replica."""

    def __init__(self, db: DatabaseAdapter):
        self.db = db

    async def find_active(self, username: str) -> Optional[User]:
        """The live user with this username, if replicated."""
        row = await self.db.fetchrow(
            "SELECT * FROM users WHERE username = $1 AND deleted_at IS NULL",
            username
        )
        return User.model_validate(row) if row else None


def build_auth_service(
    db: DatabaseAdapter,
    transport: Transport,
    config: Optional[ReplicationConfig] = None
) -> ServiceRuntime:
    """Auth: user replica with credentials. No outbox."""
    runtime = ServiceRuntime(
        name="auth",
        db=db,
        transport=transport,
        queue_handler=QueueHandler("auth"),
        config=config or get_config(),
        store=CredentialStore(db),
    )
    users = ChangeConsumer(db, AuthUserHandler())
    runtime.queue_handler.route(Topic.USERS_AUTH.value, users.sync)
    return runtime
