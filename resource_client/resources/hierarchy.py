"""
Parent/child resource hierarchies across collections.

A HierarchicalCoordinator manages one resource (the leaf) nested under a
path of parent collections, e.g. listeners under api_clients/queues:

    api_clients: {id: "c1", queues: ["q1"]}
    queues:      {id: "q1", listeners: ["l1"], api_clients_ref: "c1"}
    listeners:   {id: "l1", queues_ref: "q1"}

Each child lives in its own collection; its parent keeps the child id in an
array named after the child collection. The optional back-reference
`<parent collection>_ref` points from a child to its parent.

Invariants:
    - The leaf document and the parent's reference to it are created and
      removed in one transaction; neither exists without the other
    - Reads traverse from the root through every ancestor's child array, so
      a leaf not reachable through all given ancestors is not found
    - Id counts are validated before any store access: item operations take
      len(resource_path) + 1 ids, collection operations len(resource_path)
    - The unique id index on the leaf collection exists before the first
      create; indexes cannot be built inside a transaction
    - Observers are notified after commit only

How to change safely:
    - Keep create/delete writes inside run_in_transaction(); the in-memory
      store tests rely on rollback to prove atomicity
    - The traversal pipeline uses only $match/$project/$lookup/$unwind/
      $replaceRoot, which the in-memory store implements
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..documents import ID_FIELD, METADATA_FIELD, read_stages
from ..errors import NotFoundError
from ..events import Created, Deleted, Observer, ObserverRegistry, Updated
from ..store import Document, ResourceStore
from .base import (
    Update,
    check_length,
    delete_resource,
    insert_resource,
    parse_path,
    run_in_transaction,
    to_update_document,
    update_resource,
)
from .references import ReferenceStore
from .simple import IndexDefinition, normalize_index

logger = logging.getLogger(__name__)


class HierarchicalCoordinator:
    """Transactional CRUD for a resource nested under parent collections.

    Attributes:
        store: Injected document store
        resource_name: Leaf collection, e.g. "listeners"
        resource_path: Ancestor collections from the root, e.g.
            ("api_clients", "queues")
        references: Child-id arrays on the immediate parent collection
        observers: Registry notified after each committed change

    Example:
        >>> listeners = HierarchicalCoordinator(
        ...     store, "listeners", "api_clients/queues", enable_two_way_references=True
        ... )
        >>> await listeners.create(["c1", "q1", "l1"], {"url": "https://example.com/hook"})
        >>> await listeners.get(["c1", "q1", "l1"])
    """

    def __init__(
        self,
        store: ResourceStore,
        resource_name: str,
        resource_path: Union[str, Sequence[str]],
        *,
        enable_two_way_references: bool = False,
        hidden_resource_path: Union[str, Sequence[str]] = (),
        indexes: Optional[Sequence[IndexDefinition]] = None,
        observers: Optional[List[Observer]] = None,
    ) -> None:
        self.store = store
        self.resource_name = resource_name
        self.resource_path = parse_path(resource_path)
        if not self.resource_path:
            raise ValueError("resource_path needs at least one parent collection")
        self.hidden_resource_path = parse_path(hidden_resource_path)
        self.enable_two_way_references = enable_two_way_references
        self.indexes = list(indexes or [])
        self.references = ReferenceStore(store, self.parent_collection, resource_name)
        self.observers = ObserverRegistry(observers)
        self._indexes_ready = False

    @property
    def path_depth(self) -> int:
        return len(self.resource_path)

    @property
    def parent_collection(self) -> str:
        return self.resource_path[-1]

    @property
    def back_reference_field(self) -> str:
        return f"{self.parent_collection}_ref"

    async def ensure_indexes(self) -> None:
        """Create the unique id index on the leaf collection plus configured indexes."""
        await self.store.create_index(self.resource_name, [(ID_FIELD, 1)], unique=True)
        for index in self.indexes:
            keys, unique = normalize_index(index)
            await self.store.create_index(self.resource_name, keys, unique=unique)
        self._indexes_ready = True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _item_ids(self, resource_ids: Any) -> Tuple[str, ...]:
        return check_length(self.resource_path, resource_ids, self.path_depth + 1)

    def _collection_ids(self, resource_ids: Any) -> Tuple[str, ...]:
        return check_length(self.resource_path, resource_ids, self.path_depth)

    def _lookup_pipeline(
        self,
        resource_ids: Sequence[str],
        *,
        match: Optional[Mapping[str, Any]] = None,
        with_metadata: bool = False,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Aggregation on the root collection that walks down to the leaf.

        For each given id: select that document, join its child array against
        the next collection (restricted to the next id, or to `match` at the
        last level) and make the joined child the new root.
        """
        pipeline: List[Dict[str, Any]] = []
        for level, resource_id in enumerate(resource_ids):
            pipeline.append({"$match": {ID_FIELD: resource_id}})
            pipeline.append({"$project": {"_id": 0, METADATA_FIELD: 0}})

            child = (
                self.resource_path[level + 1]
                if level + 1 < self.path_depth
                else self.resource_name
            )
            child_pipeline: List[Dict[str, Any]] = []
            if level + 1 < len(resource_ids):
                child_pipeline.append({"$match": {ID_FIELD: resource_ids[level + 1]}})
            elif match:
                child_pipeline.append({"$match": dict(match)})

            pipeline.append(
                {
                    "$lookup": {
                        "from": child,
                        "localField": child,
                        "foreignField": ID_FIELD,
                        "pipeline": child_pipeline,
                        "as": child,
                    }
                }
            )
            pipeline.append({"$unwind": f"${child}"})
            pipeline.append({"$replaceRoot": {"newRoot": f"${child}"}})

            if child == self.resource_name:
                break

        pipeline.extend(read_stages(with_metadata, projection))
        return pipeline

    async def _traverse(
        self, resource_ids: Sequence[str], *, session: Any = None, **options: Any
    ) -> List[Document]:
        return await self.store.aggregate(
            self.resource_path[0],
            self._lookup_pipeline(resource_ids, **options),
            session=session,
        )

    async def get(
        self,
        resource_ids: Sequence[str],
        *,
        with_metadata: bool = False,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Document]:
        """Return the leaf reachable through every ancestor, or None.

        Raises:
            LengthMismatchError: If len(resource_ids) != len(resource_path) + 1
        """
        ids = self._item_ids(resource_ids)
        results = await self._traverse(ids, with_metadata=with_metadata, projection=projection)
        return results[0] if results else None

    async def exists(self, resource_ids: Sequence[str]) -> bool:
        return await self.get(resource_ids) is not None

    async def find(
        self,
        resource_ids: Sequence[str],
        *,
        match: Optional[Mapping[str, Any]] = None,
        with_metadata: bool = False,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Document]:
        """Return the first child of the addressed parent matching `match`.

        Raises:
            LengthMismatchError: If len(resource_ids) != len(resource_path)
        """
        ids = self._collection_ids(resource_ids)
        results = await self._traverse(
            ids, match=match, with_metadata=with_metadata, projection=projection
        )
        return results[0] if results else None

    async def get_all(
        self,
        resource_ids: Sequence[str],
        *,
        with_metadata: bool = False,
        projection: Optional[Mapping[str, Any]] = None,
        add_document_path: bool = False,
    ) -> List[Document]:
        """Return every child of the addressed parent.

        With add_document_path each document gets a "$path" such as
        ``/api_clients/c1/queues/q1/listeners/l1``; collections listed in
        hidden_resource_path are left out of it.

        Raises:
            LengthMismatchError: If len(resource_ids) != len(resource_path)
        """
        ids = self._collection_ids(resource_ids)
        resources = await self._traverse(
            ids, with_metadata=with_metadata, projection=projection
        )
        if add_document_path:
            for resource in resources:
                resource["$path"] = self._document_path(ids, resource.get(ID_FIELD))
        return resources

    def _document_path(self, resource_ids: Sequence[str], resource_id: Any) -> str:
        segments = [""]
        for collection, parent_id in zip(self.resource_path, resource_ids):
            if collection not in self.hidden_resource_path:
                segments.extend([collection, parent_id])
        segments.extend([self.resource_name, str(resource_id)])
        return "/".join(segments)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(self, resource_ids: Sequence[str], resource: Mapping[str, Any]) -> str:
        """Create the leaf and reference it from its parent atomically.

        Returns:
            The new resource id (resource_ids[-1])

        Raises:
            LengthMismatchError: If len(resource_ids) != len(resource_path) + 1
            CreateFailedError: If the id exists, is already referenced, or the
                parent does not exist
            TransactionAbortedError: If the transaction could not be committed
        """
        ids = self._item_ids(resource_ids)
        resource_id = ids[-1]
        document = dict(resource)
        if not self._indexes_ready:
            await self.ensure_indexes()
        if self.enable_two_way_references:
            document[self.back_reference_field] = ids[-2]

        async def work(session: Any) -> Document:
            stored = await insert_resource(
                self.store, self.resource_name, ids, resource_id, document, session=session
            )
            await self.references.create(ids, resource_id, session=session)
            return stored

        stored = await run_in_transaction(self.store, "create", ids, work)

        logger.debug(
            "Nested resource created",
            extra={"resource_name": self.resource_name, "resource_ids": list(ids)},
        )
        await self.observers.notify(Created(self.resource_name, ids, stored))
        return resource_id

    async def update(self, resource_ids: Sequence[str], update: Update) -> Optional[Document]:
        """Update the leaf and return its new state.

        Raises:
            LengthMismatchError: If len(resource_ids) != len(resource_path) + 1
            NotFoundError: If the leaf is not reachable through its ancestors
            TransactionAbortedError: If the transaction could not be committed
        """
        ids = self._item_ids(resource_ids)
        document = to_update_document(update)

        async def work(session: Any) -> Document:
            found = await self._traverse(ids, session=session)
            if not found:
                raise NotFoundError(self.resource_name, ids)
            await update_resource(
                self.store, self.resource_name, ids[-1], document, session=session
            )
            return found[0]

        before = await run_in_transaction(self.store, "update", ids, work)

        after = await self.get(ids)
        await self.observers.notify(Updated(self.resource_name, ids, before, after or {}))
        return after

    async def delete(self, resource_ids: Sequence[str]) -> Document:
        """Delete the leaf and its parent reference atomically.

        Returns:
            The last state of the deleted resource

        Raises:
            LengthMismatchError: If len(resource_ids) != len(resource_path) + 1
            NotFoundError: If the leaf is not reachable through its ancestors
            TransactionAbortedError: If the transaction could not be committed
        """
        ids = self._item_ids(resource_ids)

        async def work(session: Any) -> Document:
            found = await self._traverse(ids, session=session)
            if not found:
                raise NotFoundError(self.resource_name, ids)
            await self.references.delete(ids, session=session)
            deleted = await delete_resource(
                self.store, self.resource_name, ids[-1], session=session
            )
            if deleted == 0:
                raise NotFoundError(self.resource_name, ids)
            return found[0]

        before = await run_in_transaction(self.store, "delete", ids, work)

        await self.observers.notify(Deleted(self.resource_name, ids, before))
        return before
