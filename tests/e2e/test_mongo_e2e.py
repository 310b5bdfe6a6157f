"""
End-to-end tests against a real MongoDB replica set.

Tests cover:
- Duplicate key translation and lock contention
- Transaction rollback of nested creates
- Hierarchy traversal with the server's $lookup
- Lock manager round trip
"""

import asyncio
import os

import pytest

from resource_client.errors import (
    CreateFailedError,
    DuplicateKeyError,
    LockInterruptedError,
)
from resource_client.locking import LockManager, LockStore
from resource_client.resources import FieldSet, HierarchicalCoordinator, SimpleResourceStorage

pytestmark = pytest.mark.skipif(
    os.environ.get("RESOURCE_CLIENT_E2E_TESTS", "0") != "1",
    reason="E2E tests disabled. Set RESOURCE_CLIENT_E2E_TESTS=1 to enable.",
)


class TestMongoStore:
    """Store-level behaviour on a real server."""

    @pytest.mark.asyncio
    async def test_duplicate_key(self, mongo_store):
        """Unique index violations surface as DuplicateKeyError."""
        await mongo_store.create_index("queues", [("id", 1)], unique=True)
        await mongo_store.insert_one("queues", {"id": "q1"})

        with pytest.raises(DuplicateKeyError) as exc_info:
            await mongo_store.insert_one("queues", {"id": "q1"})

        assert "duplicate key" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transaction_rollback(self, mongo_store):
        """Writes inside an aborted transaction are discarded."""
        with pytest.raises(RuntimeError):
            async with mongo_store.transaction() as session:
                await mongo_store.insert_one("queues", {"id": "q1"}, session=session)
                raise RuntimeError("boom")

        assert await mongo_store.find_one("queues", {"id": "q1"}) is None


class TestHierarchyOnMongo:
    """Nested resources on a real server."""

    @pytest.mark.asyncio
    async def test_full_flow(self, mongo_store):
        """Create, read, update and delete a nested resource."""
        api_clients = SimpleResourceStorage(mongo_store, "api_clients")
        queues = HierarchicalCoordinator(mongo_store, "queues", "api_clients")
        listeners = HierarchicalCoordinator(
            mongo_store, "listeners", "api_clients/queues", enable_two_way_references=True
        )
        for component in (api_clients, queues, listeners):
            await component.ensure_indexes()

        await api_clients.create(["c1"], {"name": "billing"})
        await queues.create(["c1", "q1"], {"name": "orders"})
        await listeners.create(["c1", "q1", "l1"], {"url": "https://example.com"})

        assert (await listeners.get(["c1", "q1", "l1"]))["queues_ref"] == "q1"
        assert await listeners.get(["c2", "q1", "l1"]) is None

        after = await listeners.update(["c1", "q1", "l1"], FieldSet({"enabled": False}))
        assert after["enabled"] is False

        paths = await listeners.get_all(["c1", "q1"], add_document_path=True)
        assert paths[0]["$path"] == "/api_clients/c1/queues/q1/listeners/l1"

        with pytest.raises(CreateFailedError):
            await listeners.create(["c1", "missing", "l2"], {})
        assert await mongo_store.find_one("listeners", {"id": "l2"}) is None

        await listeners.delete(["c1", "q1", "l1"])
        queue = await mongo_store.find_one("queues", {"id": "q1"})
        assert queue["listeners"] == []


class TestLocksOnMongo:
    """Lock manager on a real server."""

    @pytest.mark.asyncio
    async def test_lock_round_trip(self, mongo_store):
        """Locks exclude each other and are released after interruption."""
        lock_store = LockStore(mongo_store)
        await lock_store.ensure_indexes()
        manager = LockManager(lock_store, lock_timeout=0.25, wait_timeout=2.0, retry_interval=0.05)

        with pytest.raises(LockInterruptedError):
            await manager.do_while_locked(["c1"], lambda: asyncio.sleep(0.5))

        assert await manager.do_while_locked(["c1"], lambda: "ok") == "ok"
