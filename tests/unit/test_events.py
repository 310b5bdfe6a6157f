"""
Unit tests for post-commit events.

Tests cover:
- Event actions
- Observer registration and ordering
- Sync and async observers
- Failing observers do not stop delivery
"""

import logging

import pytest

from resource_client.events import Created, Deleted, ObserverRegistry, Updated


class TestEvents:
    """Tests for event types."""

    def test_actions(self):
        """Each event type carries its action name."""
        assert Created("queues", ("q1",)).action == "create"
        assert Updated("queues", ("q1",)).action == "update"
        assert Deleted("queues", ("q1",)).action == "delete"


class TestObserverRegistry:
    """Tests for ObserverRegistry."""

    @pytest.fixture
    def event(self):
        return Created("queues", ("c1", "q1"), {"id": "q1"})

    def test_register_is_idempotent(self):
        """The same observer is registered once."""
        registry = ObserverRegistry()

        def observer(event):
            pass

        registry.register(observer)
        registry.register(observer)

        assert len(registry) == 1

        registry.unregister(observer)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_notify_in_order(self, event):
        """Sync and async observers are called in registration order."""
        seen = []

        def first(e):
            seen.append(("first", e.action))

        async def second(e):
            seen.append(("second", e.action))

        await ObserverRegistry([first, second]).notify(event)

        assert seen == [("first", "create"), ("second", "create")]

    @pytest.mark.asyncio
    async def test_failing_observer_is_logged(self, event, caplog):
        """A raising observer is logged and later observers still run."""
        seen = []

        def broken(e):
            raise RuntimeError("observer bug")

        registry = ObserverRegistry([broken, seen.append])

        with caplog.at_level(logging.ERROR, logger="resource_client.events"):
            await registry.notify(event)

        assert seen == [event]
        assert "Observer failed" in caplog.text
