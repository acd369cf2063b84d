"""
Replica Handlers

The capability contract an entity type implements to plug into the
change consumer, and a SQL implementation covering the common case of a
replica table with id, v, created_at, deleted_at and domain columns.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Mapping, Optional, Sequence, Type, TypeVar

from ..database.adapter import DatabaseConnection
from ..outbox.writer import OutboxWriter
from ..timeutil import utcnow
from .models import ChangeData, ReplicaRow, VersionKey

D = TypeVar("D", bound=ChangeData)
R = TypeVar("R", bound=ReplicaRow)


class ReplicaHandler(ABC, Generic[D, R]):
    """
    Per entity type operations used by ChangeConsumer.

    Every method receives the connection of the apply transaction. The
    consumer owns the transaction; handlers never commit.
    """

    entity: str = "entity"
    change_model: Type[D] = ChangeData

    def decode(self, payload: Mapping[str, Any]) -> D:
        return self.change_model.model_validate(payload)

    @abstractmethod
    async def create_entity(self, conn: DatabaseConnection, data: D) -> R:
        """Insert the entity at version 0. Raises UniqueViolationError if it exists."""

    @abstractmethod
    async def update_entity(
        self,
        conn: DatabaseConnection,
        expected: VersionKey,
        data: D
    ) -> Optional[R]:
        """Apply `data` only if the stored row is at `expected`. None if it is not."""

    @abstractmethod
    async def find_entity(self, conn: DatabaseConnection, key: VersionKey) -> Optional[R]:
        """The row stored at exactly `key`, or None."""

    async def current_version(self, conn: DatabaseConnection, entity_id: str) -> Optional[int]:
        """
        Stored version of an entity, None if absent.

        A create that hits a unique violation is acked as a duplicate only
        when this finds the entity; otherwise it is retried.
        """
        return None

    async def after_apply(
        self,
        conn: DatabaseConnection,
        row: R,
        data: D,
        outbox: Optional[OutboxWriter]
    ) -> None:
        """Cascade step run inside the apply transaction after a create or update."""


def encode_column(value: Any) -> Any:
    """Lists and dicts are stored as JSON text."""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


class SqlReplicaHandler(ReplicaHandler[D, R]):
    """
    Replica stored in one table keyed by id.

    Subclasses set `table`, `columns` (domain columns kept locally, a
    subset of the change model's fields), `change_model` and `row_model`.
    Fields of a change that are not in `columns` are ignored.
    """

    table: str = ""
    columns: Sequence[str] = ()
    row_model: Type[R] = ReplicaRow

    def _values(self, data: D) -> Dict[str, Any]:
        changed = data.changed_fields()
        kept = ("created_at", "deleted_at", *self.columns)
        return {name: encode_column(changed[name]) for name in kept if name in changed}

    def _row(self, row: Optional[Dict[str, Any]]) -> Optional[R]:
        if row is None:
            return None
        return self.row_model.model_validate(row)

    async def create_entity(self, conn: DatabaseConnection, data: D) -> R:
        values = self._values(data)
        values.setdefault("created_at", utcnow())
        names = ["id", "v", *values]
        params = [data.id, data.v, *values.values()]
        marks = ", ".join(f"${i}" for i in range(1, len(params) + 1))
        row = await conn.fetchrow(
            f"INSERT INTO {self.table} ({', '.join(names)}) VALUES ({marks}) RETURNING *",
            *params
        )
        return self._row(row)

    async def update_entity(
        self,
        conn: DatabaseConnection,
        expected: VersionKey,
        data: D
    ) -> Optional[R]:
        values = self._values(data)
        # created_at never changes after creation
        values.pop("created_at", None)
        assignments = ["v = $1"]
        params = [data.v]
        for name, value in values.items():
            params.append(value)
            assignments.append(f"{name} = ${len(params)}")
        params.extend([expected.id, expected.v])
        row = await conn.fetchrow(
            f"""
            UPDATE {self.table} SET {', '.join(assignments)}
            WHERE id = ${len(params) - 1} AND v = ${len(params)}
            RETURNING *
            """,
            *params
        )
        return self._row(row)

    async def find_entity(self, conn: DatabaseConnection, key: VersionKey) -> Optional[R]:
        row = await conn.fetchrow(
            f"SELECT * FROM {self.table} WHERE id = $1 AND v = $2",
            key.id, key.v
        )
        return self._row(row)

    async def current_version(self, conn: DatabaseConnection, entity_id: str) -> Optional[int]:
        return await conn.fetchval(
            f"SELECT v FROM {self.table} WHERE id = $1",
            entity_id
        )
