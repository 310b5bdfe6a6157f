"""
Child-id arrays embedded in parent documents.

A parent document in `collection_name` keeps the ids of its children in an
array field named after the child resource, e.g. a `queues` document has
`listeners: ["l1", "l2"]`.

Invariants:
    - A child id appears at most once in its parent's array
    - create/delete address the pair (parent id, child id) as the last two
      resource ids
"""

from __future__ import annotations

from typing import Any, List, Sequence

from ..documents import ID_FIELD
from ..errors import CreateFailedError, NotFoundError
from ..store import ResourceStore


class ReferenceStore:
    """Adds and removes child references on parent documents."""

    def __init__(self, store: ResourceStore, collection_name: str, resource_name: str) -> None:
        self.store = store
        self.collection_name = collection_name
        self.resource_name = resource_name

    async def exists(self, resource_ids: Sequence[str], *, session: Any = None) -> bool:
        """Whether parent resource_ids[-2] references child resource_ids[-1]."""
        parent = await self.store.find_one(
            self.collection_name,
            {ID_FIELD: resource_ids[-2], self.resource_name: {"$in": [resource_ids[-1]]}},
            projection={ID_FIELD: 1},
            session=session,
        )
        return parent is not None

    async def get_all(self, resource_ids: Sequence[str], *, session: Any = None) -> List[str]:
        """Child ids referenced by parent resource_ids[-1].

        Raises:
            NotFoundError: If the parent does not exist
        """
        parent = await self.store.find_one(
            self.collection_name,
            {ID_FIELD: resource_ids[-1]},
            projection={self.resource_name: 1},
            session=session,
        )
        if parent is None:
            raise NotFoundError(self.collection_name, resource_ids)
        return list(parent.get(self.resource_name, []))

    async def create(self, resource_ids: Sequence[str], ref: str, *, session: Any = None) -> str:
        """Append ref to the parent's child array.

        Raises:
            CreateFailedError: If the reference already exists or the parent
                does not exist
        """
        parent_id = resource_ids[-2]
        if await self.exists([parent_id, ref], session=session):
            raise CreateFailedError(
                resource_ids, f"{self.resource_name} '{ref}' already referenced by '{parent_id}'"
            )
        outcome = await self.store.update_one(
            self.collection_name,
            {ID_FIELD: parent_id},
            {"$push": {self.resource_name: ref}},
            session=session,
        )
        if outcome.matched_count == 0:
            raise CreateFailedError(
                resource_ids, f"{self.collection_name} '{parent_id}' does not exist"
            )
        return ref

    async def delete(self, resource_ids: Sequence[str], *, session: Any = None) -> None:
        """Remove child resource_ids[-1] from parent resource_ids[-2].

        Raises:
            NotFoundError: If the reference does not exist
        """
        if not await self.exists(resource_ids, session=session):
            raise NotFoundError(self.resource_name, resource_ids)
        await self.store.update_one(
            self.collection_name,
            {ID_FIELD: resource_ids[-2]},
            {"$pull": {self.resource_name: resource_ids[-1]}},
            session=session,
        )
