"""
Integration tests for ResourceClient with an injected in-memory store.

Tests cover:
- connect/close lifecycle and async context manager
- Injected stores are not closed by the client
- Components share the client's store
- Lock manager built from lock settings
- Indexes created on first write without an explicit ensure_indexes()
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from resource_client import ClientConfig, ResourceClient
from resource_client.config import LockSettings
from resource_client.errors import (
    AlreadyLockedError,
    CreateFailedError,
    ResourceClientError,
    StoreError,
)
from resource_client.locking import LockManager
from resource_client.resources import FieldSet
from resource_client.store import InMemoryResourceStore, MongoResourceStore, create_resource_store


class TestResourceClient:
    """Tests for ResourceClient."""

    @pytest.fixture
    def config(self):
        return ClientConfig(lock=LockSettings(wait_timeout_ms=200, retry_interval_ms=20))

    @pytest.fixture
    def store(self):
        return InMemoryResourceStore()

    @pytest.mark.asyncio
    async def test_not_connected(self, config, store):
        """Components are unavailable before connect()."""
        client = ResourceClient(config, store=store)

        with pytest.raises(ResourceClientError) as exc_info:
            client.simple_storage("api_clients")

        assert exc_info.value.code == "NOT_CONNECTED"

    @pytest.mark.asyncio
    async def test_context_manager(self, config, store):
        """async with connects and closes."""
        async with ResourceClient(config, store=store) as client:
            assert client.is_connected
            assert client.store is store

        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_injected_store_stays_open(self, config, store):
        """close() does not close a store the caller owns."""
        async with ResourceClient(config, store=store) as client:
            await client.simple_storage("api_clients").create(["c1"], {})

        assert await store.find_one("api_clients", {"id": "c1"}) is not None

    @pytest.mark.asyncio
    async def test_connect_failure(self, config, store):
        """A failing ping leaves the client disconnected."""
        await store.close()
        client = ResourceClient(config, store=store)

        with pytest.raises(StoreError):
            await client.connect()

        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_components_share_store(self, config, store):
        """Storage, hierarchy and history all write to one store."""
        async with ResourceClient(config, store=store) as client:
            api_clients = client.simple_storage("api_clients")
            queues = client.hierarchy("queues", "api_clients")
            history = client.history("queues_history")
            history.attach(queues.observers)

            await api_clients.create(["c1"], {"name": "billing"})
            await queues.create(["c1", "q1"], {"name": "orders"})
            await queues.update(["c1", "q1"], FieldSet({"name": "invoices"}))

            assert (await queues.get(["c1", "q1"]))["name"] == "invoices"
            assert len((await history.get(["c1", "q1"]))["history"]) == 2

    @pytest.mark.asyncio
    async def test_lock_manager_uses_settings(self, config, store):
        """The lock manager takes its timeouts from LockSettings."""
        async with ResourceClient(config, store=store) as client:
            manager = client.lock_manager()

            assert isinstance(manager, LockManager)
            assert manager.wait_timeout == 0.2
            assert manager.retry_interval == 0.02
            assert manager.lock_store.collection_name == "_locks"
            assert await manager.do_while_locked(["c1"], lambda: "ok") == "ok"

    @pytest.mark.asyncio
    async def test_concurrent_locks_without_ensure_indexes(self, config, store):
        """A fresh lock manager rejects the second of two concurrent locks."""
        async with ResourceClient(config, store=store) as client:
            manager = client.lock_manager()

            results = await asyncio.gather(
                manager.lock(["c1"]), manager.lock(["c1"]), return_exceptions=True
            )

            assert results.count(None) == 1
            assert sum(isinstance(r, AlreadyLockedError) for r in results) == 1
            assert len(await store.aggregate("_locks", [{"$match": {"key": "c1"}}])) == 1

    @pytest.mark.asyncio
    async def test_lock_ttl_index_installed_on_first_lock(self, config, store):
        """Locks left by a dead holder are reaped by the TTL index."""
        async with ResourceClient(config, store=store) as client:
            await client.lock_manager().lock(["c1"])

            removed = store.expire_ttl_documents(datetime.now(timezone.utc) + timedelta(seconds=10))

            assert removed == 1
            assert await store.find_one("_locks", {"key": "c1"}) is None

    @pytest.mark.asyncio
    async def test_hierarchy_rejects_shared_child_without_ensure_indexes(self, config, store):
        """A child id cannot be created under a second parent."""
        async with ResourceClient(config, store=store) as client:
            api_clients = client.simple_storage("api_clients")
            queues = client.hierarchy("queues", "api_clients")
            await api_clients.create(["c1"], {})
            await api_clients.create(["c2"], {})
            await queues.create(["c1", "q1"], {"name": "orders"})

            with pytest.raises(CreateFailedError):
                await queues.create(["c2", "q1"], {"name": "orders"})

            assert len(await store.aggregate("queues", [{"$match": {"id": "q1"}}])) == 1
            assert not (await store.find_one("api_clients", {"id": "c2"})).get("queues")

    @pytest.mark.asyncio
    async def test_simple_storage_rejects_duplicate_without_ensure_indexes(self, config, store):
        """Creating an existing id fails on a fresh storage."""
        async with ResourceClient(config, store=store) as client:
            api_clients = client.simple_storage("api_clients")
            await api_clients.create(["c1"], {"name": "billing"})

            with pytest.raises(CreateFailedError):
                await client.simple_storage("api_clients").create(["c1"], {"name": "other"})

            assert len(await store.aggregate("api_clients", [{"$match": {"id": "c1"}}])) == 1


class TestCreateResourceStore:
    """Tests for the store factory."""

    @pytest.mark.asyncio
    async def test_builds_mongo_store_from_settings(self):
        """Without a client the factory builds an owned motor client."""
        store = create_resource_store(ClientConfig())

        assert isinstance(store, MongoResourceStore)
        assert store.database_name == "default"
        await store.close()
