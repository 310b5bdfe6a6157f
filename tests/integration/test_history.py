"""
Integration tests for ResourceHistory.

Tests cover:
- First create starts a history document
- Updates and deletes append entries
- Re-created ids keep appending
- Detached history records nothing
"""

import pytest
import pytest_asyncio

from resource_client.resources import (
    FieldSet,
    HierarchicalCoordinator,
    ResourceHistory,
    SimpleResourceStorage,
)
from resource_client.store import InMemoryResourceStore


class TestResourceHistory:
    """Tests for history recording."""

    @pytest_asyncio.fixture
    async def store(self):
        store = InMemoryResourceStore()
        await SimpleResourceStorage(store, "api_clients").create(["c1"], {})
        return store

    @pytest_asyncio.fixture
    async def queues(self, store):
        return HierarchicalCoordinator(store, "queues", "api_clients")

    @pytest_asyncio.fixture
    async def history(self, store, queues):
        history = ResourceHistory(store, "queues_history")
        await history.ensure_indexes()
        history.attach(queues.observers)
        return history

    @pytest.mark.asyncio
    async def test_lifecycle_is_recorded(self, queues, history):
        """Create, update and delete produce three entries in order."""
        await queues.create(["c1", "q1"], {"name": "orders"})
        await queues.update(["c1", "q1"], FieldSet({"name": "invoices"}))
        await queues.delete(["c1", "q1"])

        document = await history.get(["c1", "q1"])

        assert document["id"] == "c1#q1"
        entries = document["history"]
        assert [entry["action"] for entry in entries] == ["create", "update", "delete"]
        assert entries[0]["resource"]["name"] == "orders"
        assert entries[1]["resource"]["name"] == "invoices"
        assert entries[2]["resource"]["name"] == "invoices"
        assert entries[0]["timestamp"] <= entries[2]["timestamp"]

    @pytest.mark.asyncio
    async def test_recreated_id_appends(self, queues, history):
        """Creating an id again continues its history."""
        await queues.create(["c1", "q1"], {"name": "a"})
        await queues.delete(["c1", "q1"])
        await queues.create(["c1", "q1"], {"name": "b"})

        document = await history.get(["c1", "q1"])

        assert [entry["action"] for entry in document["history"]] == [
            "create",
            "delete",
            "create",
        ]

    @pytest.mark.asyncio
    async def test_detach(self, queues, history):
        """A detached history stops recording."""
        history.detach(queues.observers)

        await queues.create(["c1", "q1"], {})

        assert await history.get(["c1", "q1"]) is None
