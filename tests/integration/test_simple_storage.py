"""
Integration tests for SimpleResourceStorage on the in-memory store.

Tests cover:
- create/get/exists with composite ids
- Duplicate ids
- update with and without upsert
- delete
- get_all / find passthrough
- Caller-supplied indexes
"""

import pytest
import pytest_asyncio

from resource_client.errors import CreateFailedError, DuplicateKeyError, NotFoundError
from resource_client.resources import FieldSet, RawOperator, SimpleResourceStorage
from resource_client.store import InMemoryResourceStore


class TestSimpleResourceStorage:
    """Tests for single-collection CRUD."""

    @pytest.fixture
    def store(self):
        return InMemoryResourceStore()

    @pytest_asyncio.fixture
    async def api_clients(self, store):
        """Storage with indexes ensured."""
        storage = SimpleResourceStorage(
            store, "api_clients", indexes=[{"key": {"name": 1}, "unique": True}]
        )
        await storage.ensure_indexes()
        return storage

    @pytest.mark.asyncio
    async def test_create_and_get(self, api_clients):
        """Created resources are returned without internal fields."""
        resource_id = await api_clients.create(["c1"], {"name": "billing"})

        assert resource_id == "c1"
        assert await api_clients.get(["c1"]) == {"name": "billing", "id": "c1"}
        assert await api_clients.get("c1") == {"name": "billing", "id": "c1"}

    @pytest.mark.asyncio
    async def test_composite_id(self, api_clients):
        """Multiple ids are joined into one composite id."""
        resource_id = await api_clients.create(["tenant", "c1"], {"name": "billing"})

        assert resource_id == "tenant#c1"
        assert await api_clients.exists(["tenant", "c1"]) is True
        assert await api_clients.exists(["c1"]) is False

    @pytest.mark.asyncio
    async def test_duplicate_id(self, api_clients):
        """A second create with the same id raises CreateFailedError."""
        await api_clients.create(["c1"], {"name": "billing"})

        with pytest.raises(CreateFailedError) as exc_info:
            await api_clients.create(["c1"], {"name": "other"})

        assert isinstance(exc_info.value.__cause__, DuplicateKeyError)

    @pytest.mark.asyncio
    async def test_caller_index_enforced(self, api_clients):
        """Configured unique indexes apply to creates."""
        await api_clients.create(["c1"], {"name": "billing"})

        with pytest.raises(CreateFailedError):
            await api_clients.create(["c2"], {"name": "billing"})

    @pytest.mark.asyncio
    async def test_update(self, api_clients):
        """update() returns the new state."""
        await api_clients.create(["c1"], {"name": "billing", "scopes": []})

        after = await api_clients.update(["c1"], FieldSet({"name": "payments"}))
        after = await api_clients.update(["c1"], RawOperator({"$addToSet": {"scopes": "read"}}))

        assert after == {"name": "payments", "scopes": ["read"], "id": "c1"}

    @pytest.mark.asyncio
    async def test_update_missing(self, api_clients):
        """Updating a missing resource raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await api_clients.update(["c1"], FieldSet({"name": "x"}))

    @pytest.mark.asyncio
    async def test_upsert(self, api_clients):
        """Upserts create the resource with metadata."""
        after = await api_clients.update(["c9"], FieldSet({"name": "new"}), upsert=True)

        assert after == {"id": "c9", "name": "new"}
        stored = await api_clients.get(["c9"], with_metadata=True)
        assert set(stored["_meta_data"]) == {"created_at", "updated_at"}

    @pytest.mark.asyncio
    async def test_delete(self, api_clients):
        """delete() returns the last state and removes the resource."""
        await api_clients.create(["c1"], {"name": "billing"})

        before = await api_clients.delete(["c1"])

        assert before["name"] == "billing"
        assert await api_clients.get(["c1"]) is None
        with pytest.raises(NotFoundError):
            await api_clients.delete(["c1"])

    @pytest.mark.asyncio
    async def test_get_all_and_find(self, api_clients):
        """get_all() lists everything; find() runs a raw pipeline."""
        await api_clients.create(["c1"], {"name": "billing"})
        await api_clients.create(["c2"], {"name": "search"})

        everything = await api_clients.get_all(projection={"name": 1})
        found = await api_clients.find(
            [{"$match": {"name": "search"}}, {"$project": {"_id": 0, "id": 1}}]
        )

        assert everything == [{"name": "billing"}, {"name": "search"}]
        assert found == [{"id": "c2"}]

    @pytest.mark.asyncio
    async def test_observers(self, store):
        """Events carry before/after snapshots."""
        events = []
        storage = SimpleResourceStorage(store, "api_clients", observers=[events.append])

        await storage.create(["c1"], {"name": "a"})
        await storage.update(["c1"], FieldSet({"name": "b"}))
        await storage.delete(["c1"])

        assert [e.action for e in events] == ["create", "update", "delete"]
        assert events[0].after == {"name": "a", "id": "c1"}
        assert events[1].before["name"] == "a"
        assert events[2].before["name"] == "b"
