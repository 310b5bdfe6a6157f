"""
Single-collection resource storage.

Stores root-level resources, one document per resource, addressed by the
composite id of the given resource ids.

Invariants:
    - `id` is unique within the collection (unique index, ensured before the
      first insert or upsert)
    - Reads never expose `_id`; `_meta_data` only with with_metadata=True
    - Observers see committed changes only
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..documents import ID_FIELD, composite_id, read_stages
from ..errors import NotFoundError
from ..events import Created, Deleted, Observer, ObserverRegistry, Updated
from ..store import Document, ResourceStore
from .base import (
    ResourceIds,
    Update,
    as_ids,
    delete_resource,
    insert_resource,
    run_in_transaction,
    to_update_document,
    update_resource,
)

logger = logging.getLogger(__name__)

IndexDefinition = Any


def normalize_index(index: IndexDefinition) -> tuple:
    """Accept {"field": 1}, [("field", 1)] or {"key": {...}, "unique": True}.

    Returns:
        (keys, unique) tuple
    """
    if isinstance(index, Mapping) and "key" in index:
        return list(dict(index["key"]).items()), bool(index.get("unique", False))
    if isinstance(index, Mapping):
        return list(index.items()), False
    return list(index), False


class SimpleResourceStorage:
    """CRUD for resources living in a single collection.

    Attributes:
        store: Injected document store
        collection_name: Collection holding the resources
        observers: Registry notified after each committed change

    Example:
        >>> api_clients = SimpleResourceStorage(store, "api_clients")
        >>> await api_clients.create(["c1"], {"name": "billing"})
        >>> await api_clients.get(["c1"])
        {'name': 'billing', 'id': 'c1'}
    """

    def __init__(
        self,
        store: ResourceStore,
        collection_name: str,
        indexes: Optional[Sequence[IndexDefinition]] = None,
        observers: Optional[List[Observer]] = None,
    ) -> None:
        self.store = store
        self.collection_name = collection_name
        self.indexes = list(indexes or [])
        self._indexes_ready = False
        self.observers = ObserverRegistry(observers)

    async def ensure_indexes(self) -> None:
        """Create the unique id index and any configured indexes."""
        await self.store.create_index(self.collection_name, [(ID_FIELD, 1)], unique=True)
        for index in self.indexes:
            keys, unique = normalize_index(index)
            await self.store.create_index(self.collection_name, keys, unique=unique)
        self._indexes_ready = True

    async def _ensure_indexes_once(self) -> None:
        if not self._indexes_ready:
            await self.ensure_indexes()

    async def get(
        self,
        resource_ids: ResourceIds,
        *,
        with_metadata: bool = False,
        projection: Optional[Mapping[str, Any]] = None,
        session: Any = None,
    ) -> Optional[Document]:
        """Return the resource or None."""
        pipeline: List[Dict[str, Any]] = [
            {"$match": {ID_FIELD: composite_id(as_ids(resource_ids))}},
            {"$limit": 1},
        ]
        pipeline.extend(read_stages(with_metadata, projection))
        results = await self.store.aggregate(self.collection_name, pipeline, session=session)
        return results[0] if results else None

    async def get_all(
        self,
        *,
        with_metadata: bool = False,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> List[Document]:
        """Return every resource in the collection."""
        return await self.store.aggregate(
            self.collection_name, read_stages(with_metadata, projection)
        )

    async def find(self, pipeline: Sequence[Mapping[str, Any]]) -> List[Document]:
        """Run a caller-supplied aggregation pipeline on the collection as-is."""
        return await self.store.aggregate(self.collection_name, pipeline)

    async def exists(self, resource_ids: ResourceIds) -> bool:
        return await self.get(resource_ids) is not None

    async def create(self, resource_ids: ResourceIds, resource: Mapping[str, Any]) -> str:
        """Create a resource.

        Returns:
            The composite id of the new resource

        Raises:
            CreateFailedError: If the id already exists
        """
        ids = as_ids(resource_ids)
        resource_id = composite_id(ids)
        await self._ensure_indexes_once()
        stored = await insert_resource(
            self.store, self.collection_name, ids, resource_id, resource
        )
        logger.debug(
            "Resource created",
            extra={"collection": self.collection_name, "resource_id": resource_id},
        )
        await self.observers.notify(Created(self.collection_name, ids, stored))
        return resource_id

    async def update(
        self, resource_ids: ResourceIds, update: Update, *, upsert: bool = False
    ) -> Optional[Document]:
        """Update a resource and return its new state.

        Args:
            resource_ids: Id(s) of the resource
            update: FieldSet or RawOperator
            upsert: Create the resource when it does not exist

        Raises:
            NotFoundError: If the resource does not exist and upsert is False
            TransactionAbortedError: If the update could not be committed
        """
        ids = as_ids(resource_ids)
        resource_id = composite_id(ids)
        document = to_update_document(update, upsert=upsert)
        if upsert:
            await self._ensure_indexes_once()

        async def work(session: Any) -> Optional[Document]:
            current = await self.get(ids, session=session)
            if current is None and not upsert:
                raise NotFoundError(self.collection_name, ids)
            await update_resource(
                self.store,
                self.collection_name,
                resource_id,
                document,
                session=session,
                upsert=upsert,
            )
            return current

        before = await run_in_transaction(self.store, "update", ids, work)

        after = await self.get(ids)
        await self.observers.notify(
            Updated(self.collection_name, ids, before or {}, after or {})
        )
        return after

    async def delete(self, resource_ids: ResourceIds) -> Document:
        """Delete a resource and return its last state.

        Raises:
            NotFoundError: If the resource does not exist
        """
        ids = as_ids(resource_ids)

        async def work(session: Any) -> Document:
            current = await self.get(ids, session=session)
            if current is None:
                raise NotFoundError(self.collection_name, ids)
            deleted = await delete_resource(
                self.store, self.collection_name, composite_id(ids), session=session
            )
            if deleted == 0:
                raise NotFoundError(self.collection_name, ids)
            return current

        before = await run_in_transaction(self.store, "delete", ids, work)

        await self.observers.notify(Deleted(self.collection_name, ids, before))
        return before
