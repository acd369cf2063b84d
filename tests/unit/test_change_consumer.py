"""
Tests for the idempotent, version-ordered change consumer.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import change
from shortly.consumer import ChangeConsumer
from shortly.errors import ApplyOutcome, ErrorCode
from shortly.outbox import OutboxDispatcher, OutboxRecord
from shortly.services.auth import AuthUserHandler
from shortly.services.links import UserReplicaHandler
from shortly.topics import LINK_UPDATE_TOPICS, Topic
from shortly.transport import Message, MessageBatch

CREATED = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)
DELETED = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


def batch(*payloads, queue=Topic.USERS_AUTH.value):
    return MessageBatch(queue, [Message(change(p, topic=queue)) for p in payloads])


def user(v, user_id="U1", **fields):
    return {"id": user_id, "v": v, **fields}


@pytest.fixture
def auth_consumer(auth_db):
    return ChangeConsumer(auth_db, AuthUserHandler())


@pytest.fixture
def links_consumer(links_db):
    return ChangeConsumer(links_db, UserReplicaHandler(), outbox_table="change_records")


class TestCreate:
    """Test v0 changes."""

    @pytest.mark.asyncio
    async def test_create_applies(self, auth_consumer, auth_db):
        result = await auth_consumer.apply(change(user(
            0, username="alice", password="h", scopes=["c-link"], createdAt=CREATED.isoformat()
        )))

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.ack
        assert result.row.username == "alice"
        assert result.row.scopes == ["c-link"]
        assert result.row.created_at == CREATED

    @pytest.mark.asyncio
    async def test_duplicate_create_acked(self, auth_consumer, auth_db):
        await auth_consumer.apply(change(user(0, username="alice")))
        result = await auth_consumer.apply(change(user(0, username="alice")))

        assert result.outcome == ApplyOutcome.DUPLICATE
        assert result.ack
        assert result.outcome.error_code == ErrorCode.DUPLICATE_APPLY
        assert await auth_db.fetchval("SELECT COUNT(*) FROM users") == 1

    @pytest.mark.asyncio
    async def test_create_colliding_on_username_is_retried(self, auth_consumer, auth_db):
        """U2 takes a name U1 still holds locally; it lands once U1's rename does."""
        await auth_consumer.apply(change(user(0, "U1", username="alice")))

        result = await auth_consumer.apply(change(user(0, "U2", username="alice")))

        assert result.outcome == ApplyOutcome.FAILED
        assert not result.ack
        assert await auth_db.fetchval("SELECT COUNT(*) FROM users WHERE id = $1", "U2") == 0

        await auth_consumer.apply(change(user(1, "U1", username="bob")))
        result = await auth_consumer.apply(change(user(0, "U2", username="alice")))

        assert result.outcome == ApplyOutcome.APPLIED
        rows = await auth_db.fetch("SELECT id, v, username FROM users ORDER BY id")
        assert [(r["id"], r["v"], r["username"]) for r in rows] == [("U1", 1, "bob"), ("U2", 0, "alice")]



class TestUpdate:
    """Test optimistic version checks on v > 0 changes."""

    @pytest.mark.asyncio
    async def test_update_applies_changed_fields_only(self, auth_consumer, auth_db):
        await auth_consumer.apply(change(user(0, username="alice", password="h1")))
        result = await auth_consumer.apply(change(user(1, password="h2")))

        assert result.outcome == ApplyOutcome.APPLIED
        row = await auth_db.fetchrow("SELECT * FROM users WHERE id = $1", "U1")
        assert row["v"] == 1
        assert row["password"] == "h2"
        assert row["username"] == "alice"

    @pytest.mark.asyncio
    async def test_redelivered_update_is_duplicate(self, auth_consumer):
        await auth_consumer.apply(change(user(0, username="alice")))
        await auth_consumer.apply(change(user(1, username="bob")))

        result = await auth_consumer.apply(change(user(1, username="bob")))
        assert result.outcome == ApplyOutcome.DUPLICATE
        assert result.ack

    @pytest.mark.asyncio
    async def test_update_before_create_is_not_found(self, auth_consumer):
        result = await auth_consumer.apply(change(user(1, username="bob")))

        assert result.outcome == ApplyOutcome.NOT_FOUND
        assert not result.ack

    @pytest.mark.asyncio
    async def test_update_ahead_of_predecessor_waits(self, auth_consumer, auth_db):
        await auth_consumer.apply(change(user(0, username="alice")))
        result = await auth_consumer.apply(change(user(2, username="carol")))

        assert result.outcome == ApplyOutcome.OUT_OF_ORDER
        assert not result.ack
        assert await auth_db.fetchval("SELECT v FROM users WHERE id = $1", "U1") == 0

    @pytest.mark.asyncio
    async def test_late_older_update_is_stale(self, auth_consumer, auth_db):
        """An older version arriving after newer ones is acked without applying."""
        await auth_consumer.apply(change(user(0, username="alice")))
        for v, name in ((1, "bob"), (2, "carol"), (3, "dave")):
            await auth_consumer.apply(change(user(v, username=name)))

        result = await auth_consumer.apply(change(user(1, username="bob-again")))

        assert result.outcome == ApplyOutcome.STALE
        assert result.ack
        row = await auth_db.fetchrow("SELECT * FROM users WHERE id = $1", "U1")
        assert (row["v"], row["username"]) == (3, "dave")

    @pytest.mark.asyncio
    async def test_unique_violation_on_update_is_retried(self, auth_consumer, auth_db):
        """A collision on update is a failure, never a duplicate."""
        await auth_consumer.apply(change(user(0, "U1", username="alice")))
        await auth_consumer.apply(change(user(0, "U2", username="bob")))

        result = await auth_consumer.apply(change(user(1, "U2", username="alice")))

        assert result.outcome == ApplyOutcome.FAILED
        assert not result.ack
        assert await auth_db.fetchval("SELECT v FROM users WHERE id = $1", "U2") == 0

    @pytest.mark.asyncio
    async def test_soft_delete_is_an_update(self, auth_consumer, auth_db):
        await auth_consumer.apply(change(user(0, username="alice")))
        result = await auth_consumer.apply(change(user(1, deletedAt=DELETED.isoformat())))

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.row.is_deleted
        assert result.row.username == "alice"


class TestDecoding:
    """Test undecodable bodies."""

    @pytest.mark.asyncio
    async def test_unparseable_body(self, auth_consumer):
        result = await auth_consumer.apply("{not json")
        assert result.outcome == ApplyOutcome.INVALID
        assert not result.ack

    @pytest.mark.asyncio
    async def test_payload_without_version(self, auth_consumer):
        result = await auth_consumer.apply(change({"id": "U1", "username": "alice"}))
        assert result.outcome == ApplyOutcome.INVALID

    @pytest.mark.asyncio
    async def test_payload_as_json_text(self, auth_consumer):
        """The payload may arrive as the JSON text stored in the outbox."""
        body = {"record_id": 1, "topic": Topic.USERS_AUTH.value, "payload": '{"id": "U1", "v": 0}'}
        result = await auth_consumer.apply(body)
        assert result.outcome == ApplyOutcome.APPLIED


class TestSync:
    """Test batch settlement."""

    @pytest.mark.asyncio
    async def test_messages_settle_independently(self, auth_consumer, auth_db):
        delivered = batch(user(0, "U1"), user(1, "U9"), user(0, "U2"))

        report = await auth_consumer.sync(delivered)

        assert [m.acked for m in delivered.messages] == [True, False, True]
        assert report.acked == 2
        assert report.retried == 1
        assert report.counts() == {"applied": 2, "not_found": 1}
        assert await auth_db.fetchval("SELECT COUNT(*) FROM users") == 2

    @pytest.mark.asyncio
    async def test_replicated_ids(self, auth_consumer):
        await auth_consumer.apply(change(user(0, "U1")))

        report = await auth_consumer.sync(batch(user(0, "U1"), user(1, "U1"), user(0, "U2")))

        # The duplicate create carries no row
        assert report.replicated_ids == ["U1", "U2"]

    @pytest.mark.asyncio
    async def test_out_of_order_delivery_converges(self, auth_consumer, auth_db, transport):
        """v2, v1, v3 delivered in that order end at v3."""
        await auth_consumer.apply(change(user(0, username="a")))
        queue = Topic.USERS_AUTH.value
        for v, name in ((2, "c"), (1, "b"), (3, "d")):
            await transport.send(queue, change(user(v, username=name), topic=queue))

        rounds = await transport.drain(queue, auth_consumer.sync)

        assert rounds == 2
        row = await auth_db.fetchrow("SELECT * FROM users WHERE id = $1", "U1")
        assert (row["v"], row["username"]) == (3, "d")
        assert transport.pending(Topic.USERS_DLQ.value) == 0


class TestCascade:
    """Test the links service user replica deleting owned links."""

    async def _seed(self, links_consumer, links_db):
        await links_consumer.apply(change(user(0, "U1", username="alice")))
        await links_consumer.apply(change(user(0, "U2", username="bob")))
        rows = (
            ("L1", "U1", None),
            ("L2", "U1", CREATED),
            ("L3", "U2", None),
        )
        for link_id, owner, deleted_at in rows:
            await links_db.execute(
                """
                INSERT INTO links (id, v, created_at, deleted_at, short, long, user_id)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                link_id, 1 if deleted_at else 0, CREATED, deleted_at,
                link_id.lower(), "https://example.com", owner
            )

    @pytest.mark.asyncio
    async def test_user_delete_cascades_to_live_links(self, links_consumer, links_db):
        await self._seed(links_consumer, links_db)

        result = await links_consumer.apply(change(user(1, "U1", deletedAt=DELETED.isoformat())))
        assert result.outcome == ApplyOutcome.APPLIED

        links = {r["id"]: r for r in await links_db.fetch("SELECT * FROM links")}
        assert links["L1"]["v"] == 1
        assert links["L1"]["deleted_at"] is not None
        # Already deleted and foreign links are untouched
        assert links["L2"]["v"] == 1
        assert links["L3"]["v"] == 0
        assert links["L3"]["deleted_at"] is None

        records = [
            OutboxRecord.model_validate(r)
            for r in await links_db.fetch("SELECT * FROM change_records ORDER BY id")
        ]
        assert [r.topic for r in records] == LINK_UPDATE_TOPICS
        assert records[0].payload["id"] == "L1"
        assert records[0].payload["v"] == 1
        assert datetime.fromisoformat(records[0].payload["deletedAt"]) == DELETED

    @pytest.mark.asyncio
    async def test_duplicate_delete_does_not_cascade_twice(self, links_consumer, links_db):
        await self._seed(links_consumer, links_db)
        deletion = change(user(1, "U1", deletedAt=DELETED.isoformat()))

        await links_consumer.apply(deletion)
        result = await links_consumer.apply(deletion)

        assert result.outcome == ApplyOutcome.DUPLICATE
        assert await links_db.fetchval("SELECT COUNT(*) FROM change_records") == 3

    @pytest.mark.asyncio
    async def test_cascade_failure_rolls_back_the_delete(self, links_db):
        """Without an outbox the cascade fails and the user stays live."""
        consumer = ChangeConsumer(links_db, UserReplicaHandler())
        await consumer.apply(change(user(0, "U1")))
        await links_db.execute(
            "INSERT INTO links (id, v, created_at, short, user_id) VALUES ($1, 0, $2, $3, $4)",
            "L1", CREATED, "l1", "U1"
        )

        result = await consumer.apply(change(user(1, "U1", deletedAt=DELETED.isoformat())))

        assert result.outcome == ApplyOutcome.FAILED
        assert await links_db.fetchval("SELECT v FROM users WHERE id = $1", "U1") == 0
        assert await links_db.fetchval("SELECT deleted_at FROM links WHERE id = $1", "L1") is None

    @pytest.mark.asyncio
    async def test_cascade_dispatches_after_batch(self, links_db, transport):
        consumer = ChangeConsumer(
            links_db,
            UserReplicaHandler(),
            outbox_table="change_records",
            dispatcher=OutboxDispatcher(links_db, transport)
        )
        await self._seed(consumer, links_db)

        await consumer.sync(batch(user(1, "U1", deletedAt=DELETED.isoformat()), queue=Topic.USERS_LINKS.value))

        for topic in LINK_UPDATE_TOPICS:
            assert transport.pending(topic) == 1

    @pytest.mark.asyncio
    async def test_emitted_records_are_counted_per_message(self, links_consumer, links_db):
        await self._seed(links_consumer, links_db)

        report = await links_consumer.sync(batch(
            user(1, "U1", deletedAt=DELETED.isoformat()),
            user(0, "U3"),
            queue=Topic.USERS_LINKS.value
        ))

        assert [r.emitted for r in report.results] == [3, 0]
        assert report.emitted == 3

    @pytest.mark.asyncio
    async def test_concurrent_batches_keep_their_own_counts(self, links_db, transport):
        """A quiet batch running alongside does not cancel the cascading batch's sweep."""
        consumer = ChangeConsumer(
            links_db,
            UserReplicaHandler(),
            outbox_table="change_records",
            dispatcher=OutboxDispatcher(links_db, transport)
        )
        await self._seed(consumer, links_db)

        reports = await asyncio.gather(
            consumer.sync(batch(user(1, "U1", deletedAt=DELETED.isoformat()), queue=Topic.USERS_LINKS.value)),
            consumer.sync(batch(user(0, "U4"), queue=Topic.USERS_LINKS.value)),
        )

        assert [r.emitted for r in reports] == [3, 0]
        for topic in LINK_UPDATE_TOPICS:
            assert transport.pending(topic) == 1
