"""
Change history recorded from storage events.

ResourceHistory is an observer: attach it to a storage component's
ObserverRegistry and every committed change is appended to a history
document keyed by the resource's composite id:

    {id: "c1#q1", history: [{timestamp, action, resource}, ...]}

Invariants:
    - The first Created event creates the history document, later events
      append to it
    - History writes happen after the change committed; a failed history
      write is logged by the registry and never undoes the change
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from ..documents import utcnow
from ..errors import CreateFailedError, NotFoundError
from ..events import Created, Deleted, ObserverRegistry, ResourceEvent, Updated
from ..store import ResourceStore
from .base import RawOperator
from .simple import SimpleResourceStorage

logger = logging.getLogger(__name__)


class ResourceHistory:
    """Observer writing an append-only history per resource.

    Example:
        >>> history = ResourceHistory(store, "listeners_history")
        >>> history.attach(listeners.observers)
        >>> await history.get(["c1", "q1", "l1"])
    """

    def __init__(self, store: ResourceStore, collection_name: str) -> None:
        self.collection_name = collection_name
        self.storage = SimpleResourceStorage(store, collection_name)

    def attach(self, registry: ObserverRegistry) -> None:
        registry.register(self)

    def detach(self, registry: ObserverRegistry) -> None:
        registry.unregister(self)

    async def ensure_indexes(self) -> None:
        await self.storage.ensure_indexes()

    async def get(self, resource_ids: Any) -> Dict[str, Any] | None:
        """History document of a resource, or None."""
        return await self.storage.get(resource_ids)

    async def __call__(self, event: ResourceEvent) -> None:
        entry = {
            "timestamp": utcnow(),
            "action": event.action,
            "resource": _resource_of(event),
        }
        if isinstance(event, Created):
            try:
                await self.storage.create(event.resource_ids, {"history": [entry]})
                return
            except CreateFailedError:
                # Re-created id: keep appending to the existing history
                logger.debug(
                    "History document exists, appending",
                    extra={"collection": self.collection_name, "resource_ids": list(event.resource_ids)},
                )
        try:
            await self.storage.update(event.resource_ids, RawOperator({"$push": {"history": entry}}))
        except NotFoundError:
            logger.warning(
                "No history document for resource",
                extra={
                    "collection": self.collection_name,
                    "resource_ids": list(event.resource_ids),
                    "action": event.action,
                },
            )


def _resource_of(event: ResourceEvent) -> Dict[str, Any]:
    if isinstance(event, Deleted):
        return dict(event.before)
    if isinstance(event, (Created, Updated)):
        return dict(event.after)
    return {}
