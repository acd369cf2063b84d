"""
End-to-end replication across the shortly services on one in-memory
transport.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import memory_db
from shortly.config import ReplicationConfig
from shortly.database import UniqueViolationError
from shortly.errors import EntityNotFoundError
from shortly.services import SERVICE_BUILDERS, UserHasLinksError, build_users_service
from shortly.timeutil import utcnow
from shortly.topics import Topic
from shortly.workers import QueueHandler, ReplicationPump

pytestmark = pytest.mark.integration


@pytest.fixture
async def cluster(config, transport):
    runtimes = {
        name: build(memory_db(), transport, config)
        for name, build in SERVICE_BUILDERS.items()
    }
    for runtime in runtimes.values():
        await runtime.setup()
    yield runtimes
    for runtime in runtimes.values():
        await runtime.db.disconnect()


@pytest.fixture
def pump(cluster, transport):
    return ReplicationPump(transport, list(cluster.values()))


async def signup(cluster, pump, username="alice"):
    user = await cluster["users"].store.create_user(username, "hash", ["r-link"])
    await pump.run_until_idle()
    return user


async def shorten(cluster, pump, user, short="abc123", **kwargs):
    link = await cluster["links"].store.create_link(short, f"https://example.com/{short}", user.id, **kwargs)
    await pump.run_until_idle()
    return link


class TestUserReplication:
    """Test users fanning out to auth, links and analytics."""

    @pytest.mark.asyncio
    async def test_create_reaches_every_replica(self, cluster, pump):
        user = await signup(cluster, pump)

        credentials = await cluster["auth"].store.find_active("alice")
        assert credentials.id == user.id
        assert credentials.password == "hash"
        assert credentials.scopes == ["c-link", "r-link"]

        for service in ("links", "analytics"):
            row = await cluster[service].db.fetchrow("SELECT * FROM users WHERE id = $1", user.id)
            assert row["v"] == 0

    @pytest.mark.asyncio
    async def test_update_carries_changed_fields(self, cluster, pump):
        user = await signup(cluster, pump)

        updated = await cluster["users"].store.update_user(user.id, password="new-hash")
        await pump.run_until_idle()

        assert updated.v == 1
        assert (await cluster["users"].store.get_user(user.id)).password == "new-hash"
        credentials = await cluster["auth"].store.find_active("alice")
        assert credentials.v == 1
        assert credentials.password == "new-hash"
        assert credentials.scopes == ["c-link", "r-link"]

    @pytest.mark.asyncio
    async def test_minimal_scopes_kept(self, cluster, pump):
        user = await signup(cluster, pump)

        updated = await cluster["users"].store.update_user(user.id, scopes=[])

        assert updated.scopes == ["c-link"]

    @pytest.mark.asyncio
    async def test_update_without_changes(self, cluster, pump):
        user = await signup(cluster, pump)
        with pytest.raises(ValueError):
            await cluster["users"].store.update_user(user.id)

    @pytest.mark.asyncio
    async def test_delete_reaches_auth(self, cluster, pump):
        user = await signup(cluster, pump)

        await cluster["users"].store.delete_user(user.id)
        await pump.run_until_idle()

        assert await cluster["auth"].store.find_active("alice") is None

    @pytest.mark.asyncio
    async def test_delete_unknown_user(self, cluster):
        with pytest.raises(EntityNotFoundError):
            await cluster["users"].store.delete_user("nobody")

    @pytest.mark.asyncio
    async def test_configured_outbox_table(self, config, monkeypatch, transport):
        monkeypatch.setenv("OUTBOX_TABLE", "users_outbox")
        runtime = build_users_service(memory_db(), transport, ReplicationConfig())
        await runtime.setup()
        try:
            await runtime.store.create_user("alice", "hash")
            assert await runtime.db.fetchval("SELECT COUNT(*) FROM users_outbox") == 3
            assert await runtime.dispatch() == 3
        finally:
            await runtime.db.disconnect()

        assert transport.pending(Topic.USERS_AUTH.value) == 1



class TestLinkReplication:
    """Test links fanning out to users, analytics and lookups."""

    @pytest.mark.asyncio
    async def test_link_needs_replicated_user(self, cluster):
        with pytest.raises(EntityNotFoundError):
            await cluster["links"].store.create_link("abc123", "https://example.com", "U-unknown")

    @pytest.mark.asyncio
    async def test_short_code_is_unique(self, cluster, pump):
        user = await signup(cluster, pump)
        await shorten(cluster, pump, user)

        with pytest.raises(UniqueViolationError):
            await cluster["links"].store.create_link("abc123", "https://example.org", user.id)

    @pytest.mark.asyncio
    async def test_create_reaches_every_replica(self, cluster, pump):
        user = await signup(cluster, pump)
        link = await shorten(cluster, pump, user)

        owner = await cluster["users"].db.fetchval("SELECT user_id FROM links WHERE id = $1", link.id)
        assert owner == user.id
        analytics = await cluster["analytics"].db.fetchrow("SELECT * FROM links WHERE id = $1", link.id)
        assert analytics["short"] == "abc123"
        assert analytics["lookup_count"] == 0
        assert await cluster["lookups"].store.resolve("abc123") == link.long

    @pytest.mark.asyncio
    async def test_update_reaches_redirects(self, cluster, pump):
        user = await signup(cluster, pump)
        link = await shorten(cluster, pump, user)

        await cluster["links"].store.update_link(link.id, long="https://example.net")
        await pump.run_until_idle()

        assert await cluster["lookups"].store.resolve("abc123") == "https://example.net"

    @pytest.mark.asyncio
    async def test_expired_link_does_not_resolve(self, cluster, pump, transport):
        user = await signup(cluster, pump)
        await shorten(cluster, pump, user, expires_at=utcnow() - timedelta(minutes=1))

        assert await cluster["lookups"].store.resolve("abc123") is None
        assert transport.pending(Topic.LOOKUPS_ANALYTICS.value) == 0

    @pytest.mark.asyncio
    async def test_unknown_short_code(self, cluster):
        assert await cluster["lookups"].store.resolve("missing") is None


class TestLookupAnalytics:
    """Test redirects rolling up into analytics."""

    @pytest.mark.asyncio
    async def test_lookups_are_counted(self, cluster, pump, transport):
        user = await signup(cluster, pump)
        link = await shorten(cluster, pump, user)

        for _ in range(3):
            await cluster["lookups"].store.resolve("abc123")
        await pump.run_until_idle()

        row = await cluster["analytics"].db.fetchrow("SELECT * FROM links WHERE id = $1", link.id)
        assert row["lookup_count"] == await cluster["analytics"].db.fetchval(
            "SELECT COUNT(*) FROM link_lookups WHERE link_id = $1", link.id
        )
        assert row["lookup_count"] >= 1
        assert row["last_lookup_at"] is not None

        live = transport.published(Topic.ANALYTICS_LIVE.value)
        assert live
        assert live[-1]["id"] == link.id
        assert "v" not in live[-1]

    @pytest.mark.asyncio
    async def test_redelivered_facts_count_once(self, cluster, pump, transport):
        user = await signup(cluster, pump)
        link = await shorten(cluster, pump, user)

        await cluster["lookups"].store.resolve("abc123")
        fact = transport.published(Topic.LOOKUPS_ANALYTICS.value)[-1]
        await transport.send(Topic.LOOKUPS_ANALYTICS.value, fact)
        await pump.run_until_idle()

        count = await cluster["analytics"].db.fetchval("SELECT lookup_count FROM links WHERE id = $1", link.id)
        assert count == 1


class TestUserDeletion:
    """Test deletes and the cascade to links."""

    @pytest.mark.asyncio
    async def test_user_with_live_links_cannot_be_deleted(self, cluster, pump):
        user = await signup(cluster, pump)
        await shorten(cluster, pump, user)

        with pytest.raises(UserHasLinksError) as exc_info:
            await cluster["users"].store.delete_user(user.id)
        assert exc_info.value.user_ids == [user.id]

    @pytest.mark.asyncio
    async def test_bulk_delete_skips_blocked_users(self, cluster, pump):
        alice = await signup(cluster, pump, "alice")
        bob = await signup(cluster, pump, "bob")
        await shorten(cluster, pump, alice)

        deleted = await cluster["users"].store.delete_users([alice.id, bob.id])

        assert [u.id for u in deleted] == [bob.id]

    @pytest.mark.asyncio
    async def test_lagging_link_replica_cascades(self, cluster, pump, transport):
        """A user deleted before its new link replicated still loses the link everywhere."""
        user = await signup(cluster, pump)
        link = await cluster["links"].store.create_link("abc123", "https://example.com", user.id)

        # The users service has not seen the link yet
        await cluster["users"].store.delete_user(user.id)
        await pump.run_until_idle()

        origin = await cluster["links"].store.get_link(link.id)
        assert origin.is_deleted
        assert origin.v == 1
        for service in ("users", "analytics", "lookups"):
            row = await cluster[service].db.fetchrow("SELECT * FROM links WHERE id = $1", link.id)
            assert row["v"] == 1
            assert row["deleted_at"] is not None
        assert await cluster["lookups"].store.resolve("abc123") is None
        assert transport.published(Topic.USERS_DLQ.value) == []
        assert transport.published(Topic.LINKS_DLQ.value) == []

    @pytest.mark.asyncio
    async def test_deleted_link_frees_user(self, cluster, pump):
        user = await signup(cluster, pump)
        link = await shorten(cluster, pump, user)

        await cluster["links"].store.delete_link(link.id)
        await pump.run_until_idle()

        deleted = await cluster["users"].store.delete_user(user.id)
        assert deleted.is_deleted


class TestPump:
    """Test the pump and queue routing."""

    @pytest.mark.asyncio
    async def test_idle_cluster(self, pump):
        assert await pump.run_until_idle() == 1

    @pytest.mark.asyncio
    async def test_background_pump(self, cluster, pump):
        user = await cluster["users"].store.create_user("alice", "hash")
        pump.poll_interval = 0.01
        await pump.start()
        try:
            for _ in range(200):
                if await cluster["auth"].store.find_active("alice"):
                    break
                await asyncio.sleep(0.01)
        finally:
            await pump.stop()

        assert (await cluster["auth"].store.find_active("alice")).id == user.id

    @pytest.mark.asyncio
    async def test_queue_routes_are_unique(self):
        async def handler(batch):
            pass

        queues = QueueHandler("links").route("q", handler)
        with pytest.raises(ValueError):
            queues.route("q", handler)

    @pytest.mark.asyncio
    async def test_unrouted_batch_is_retried(self, transport):
        await transport.send("elsewhere", {"n": 1})
        batch = transport.receive("elsewhere")

        await QueueHandler("links")(batch)

        assert not batch.messages[0].acked

    @pytest.mark.asyncio
    async def test_service_consumes(self, cluster):
        assert cluster["users"].consumes == [Topic.LINKS_USERS.value, Topic.USERS_DLQ.value]
        assert cluster["links"].consumes == [Topic.USERS_LINKS.value, Topic.LINKS_DLQ.value]
        assert cluster["auth"].consumes == [Topic.USERS_AUTH.value]
        assert cluster["lookups"].consumes == [Topic.LINKS_LOOKUPS.value]
        assert set(cluster["analytics"].consumes) == {
            Topic.USERS_ANALYTICS.value,
            Topic.LINKS_ANALYTICS.value,
            Topic.LOOKUPS_ANALYTICS.value,
        }
