"""
Tests for dead-letter handling of exhausted change messages.
"""

import pytest

from shortly.outbox import DeadLetterHandler, OutboxDispatcher, OutboxWriter
from shortly.topics import USER_UPDATE_TOPICS, Topic
from shortly.transport import Message, MessageBatch


async def write_user_change(db, user_id="U1"):
    async with db.transaction() as conn:
        return await OutboxWriter(conn).write_many(USER_UPDATE_TOPICS, {"id": user_id, "v": 1})


async def refuse(batch):
    batch.retry_all()


@pytest.fixture
def handler(users_db):
    return DeadLetterHandler(users_db)


class TestDeadLetterHandler:
    """Test marking origin records failed."""

    @pytest.mark.asyncio
    async def test_exhausted_message_marks_record_failed(self, users_db, transport, handler):
        records = await write_user_change(users_db)
        await OutboxDispatcher(users_db, transport).dispatch()

        await transport.drain(Topic.USERS_LINKS.value, refuse)
        assert transport.pending(Topic.USERS_DLQ.value) == 1

        await transport.deliver(Topic.USERS_DLQ.value, handler.handle)

        assert transport.pending(Topic.USERS_DLQ.value) == 0
        failed = {r["id"]: r["failed_at"] for r in await users_db.fetch("SELECT * FROM change_records")}
        links_record = next(r for r in records if r.topic == Topic.USERS_LINKS.value)
        assert failed[links_record.id] is not None
        assert sum(1 for value in failed.values() if value is not None) == 1

    @pytest.mark.asyncio
    async def test_marking_is_idempotent(self, users_db, handler):
        records = await write_user_change(users_db)
        body = records[0].to_envelope().model_dump(mode="json")

        first = MessageBatch(Topic.USERS_DLQ.value, [Message(body)])
        assert await handler.handle(first) == 1
        original = await users_db.fetchval("SELECT failed_at FROM change_records WHERE id = $1", records[0].id)

        again = MessageBatch(Topic.USERS_DLQ.value, [Message(body)])
        assert await handler.handle(again) == 0
        assert again.messages[0].acked
        assert await users_db.fetchval(
            "SELECT failed_at FROM change_records WHERE id = $1", records[0].id
        ) == original

    @pytest.mark.asyncio
    async def test_message_without_record_id_is_acked(self, handler):
        batch = MessageBatch(Topic.USERS_DLQ.value, [
            Message({"topic": Topic.USERS_AUTH.value, "payload": {"id": "U1", "v": 0}}),
            Message("not json"),
        ])

        assert await handler.handle(batch) == 0
        assert all(m.acked for m in batch.messages)

    @pytest.mark.asyncio
    async def test_database_failure_retries_batch(self, users_db):
        handler = DeadLetterHandler(users_db, table="no_such_table")
        batch = MessageBatch(Topic.USERS_DLQ.value, [Message({"record_id": 1, "topic": "t", "payload": {}})])

        assert await handler.handle(batch) == 0
        assert not batch.messages[0].acked


class TestDeadLetterQueries:
    """Test read-only views of failed records."""

    async def _fail(self, db, handler, count):
        ids = []
        for n in range(count):
            records = await write_user_change(db, user_id=f"U{n}")
            ids.append(records[0].id)
        bodies = [{"record_id": record_id, "topic": Topic.USERS_AUTH.value, "payload": {}} for record_id in ids]
        await handler.handle(MessageBatch(Topic.USERS_DLQ.value, [Message(b) for b in bodies]))
        return ids

    @pytest.mark.asyncio
    async def test_entries_and_count(self, users_db, handler):
        ids = await self._fail(users_db, handler, 3)

        assert await handler.get_count() == 3
        entries = await handler.get_entries(limit=2)
        assert len(entries) == 2
        assert all(e.failed_at is not None for e in entries)
        assert {e.id for e in await handler.get_entries(limit=10)} == set(ids)
        assert len(await handler.get_entries(limit=10, offset=2)) == 1

        as_dict = entries[0].to_dict()
        assert as_dict["topic"] == Topic.USERS_AUTH.value
        assert as_dict["failed_at"] is not None

    @pytest.mark.asyncio
    async def test_stats(self, users_db, handler):
        await self._fail(users_db, handler, 2)

        stats = await handler.get_stats()

        assert stats["total_count"] == 2
        assert stats["by_topic"] == {Topic.USERS_AUTH.value: 2}
        assert stats["oldest_failure"] is not None

    @pytest.mark.asyncio
    async def test_empty(self, handler):
        assert await handler.get_count() == 0
        assert await handler.get_entries() == []
        stats = await handler.get_stats()
        assert stats["total_count"] == 0
        assert stats["by_topic"] == {}
