"""
Lock document persistence.

A lock is a document in the `_locks` collection whose `key` is the composite
id of the locked resource. The unique index on `key` turns a concurrent
insert into a duplicate key failure; the TTL index on `locked_at` lets the
server reap locks whose holder died.

Invariants:
    - At most one lock document per composite id
    - Lock documents carry a BSON date in locked_at, required for TTL
    - Both indexes exist before the first lock document is inserted
"""

from __future__ import annotations

import logging
from typing import Sequence

from ..documents import ResourceId, composite_id, utcnow
from ..store import ResourceStore

logger = logging.getLogger(__name__)

KEY_FIELD = "key"


class LockStore:
    """Inserts and removes lock documents.

    Attributes:
        store: Document store shared with the rest of the client
        collection_name: Collection holding lock documents
        ttl_seconds: expireAfterSeconds of the TTL index
    """

    def __init__(
        self,
        store: ResourceStore,
        collection_name: str = "_locks",
        ttl_seconds: int = 1,
    ) -> None:
        self.store = store
        self.collection_name = collection_name
        self.ttl_seconds = ttl_seconds
        self._indexes_ready = False

    async def ensure_indexes(self) -> None:
        """Create the unique key index and the TTL index (idempotent).

        Called automatically before the first insert; calling it up front only
        moves the index build out of the first lock acquisition.
        """
        await self.store.create_index(self.collection_name, [(KEY_FIELD, 1)], unique=True)
        await self.store.create_index(
            self.collection_name,
            [("locked_at", 1)],
            expire_after_seconds=self.ttl_seconds,
        )
        logger.debug(
            "Lock indexes ensured",
            extra={"collection": self.collection_name, "ttl_seconds": self.ttl_seconds},
        )
        self._indexes_ready = True

    async def insert(self, resource_ids: Sequence[ResourceId]) -> None:
        """Insert the lock document.

        Raises:
            DuplicateKeyError: If a lock document for the ids already exists
        """
        if not self._indexes_ready:
            await self.ensure_indexes()
        await self.store.insert_one(
            self.collection_name,
            {KEY_FIELD: composite_id(resource_ids), "locked_at": utcnow()},
        )

    async def delete(self, resource_ids: Sequence[ResourceId]) -> int:
        """Delete the lock document, returning how many were removed."""
        return await self.store.delete_one(
            self.collection_name, {KEY_FIELD: composite_id(resource_ids)}
        )
