"""
Base protocol and types for the document store abstraction.

Every component talks to the database through ResourceStore. Two
implementations exist: MongoResourceStore (motor) for production and
InMemoryResourceStore for tests and local development.

Invariants:
    - insert_one raises DuplicateKeyError on a unique index violation
    - Operations given a session take part in that session's transaction
    - transaction() commits on clean exit and aborts on any exception
    - Returned documents are copies; mutating them never touches storage

How to change safely:
    - Protocol changes require updating both implementations
    - Keep the aggregation stages used by traversal supported in memory
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import (
    Any,
    AsyncContextManager,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

Document = Dict[str, Any]
Pipeline = List[Dict[str, Any]]
IndexKeys = Sequence[Tuple[str, int]]


@dataclass(frozen=True)
class UpdateOutcome:
    """Result of an update_one call.

    Attributes:
        matched_count: Documents matched by the filter (0 or 1)
        modified_count: Documents actually changed (0 or 1)
        upserted_id: _id of an inserted document when upsert created one
    """

    matched_count: int
    modified_count: int
    upserted_id: Any = None


@runtime_checkable
class ResourceStore(Protocol):
    """Protocol for document store backends.

    Transaction contract:
        - All writes issued with the same session become visible together
          at commit, or not at all
        - Reads with a session see that session's own uncommitted writes

    Example:
        >>> async with store.transaction() as session:
        ...     await store.insert_one("queues", {"id": "q1"}, session=session)
        ...     await store.update_one(
        ...         "api_clients", {"id": "c1"}, {"$push": {"queues": "q1"}}, session=session
        ...     )
    """

    @abstractmethod
    async def insert_one(
        self, collection: str, document: Mapping[str, Any], *, session: Any = None
    ) -> Any:
        """Insert a document, returning its _id.

        Raises:
            DuplicateKeyError: If a unique index is violated
            StoreError: For other failures
        """
        ...

    @abstractmethod
    async def update_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        session: Any = None,
        upsert: bool = False,
    ) -> UpdateOutcome:
        """Apply update operators to the first document matching filter."""
        ...

    @abstractmethod
    async def delete_one(
        self, collection: str, filter: Mapping[str, Any], *, session: Any = None
    ) -> int:
        """Delete the first matching document and return the deleted count."""
        ...

    @abstractmethod
    async def find_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        *,
        projection: Optional[Mapping[str, Any]] = None,
        session: Any = None,
    ) -> Optional[Document]:
        """Return the first matching document or None."""
        ...

    @abstractmethod
    async def aggregate(
        self, collection: str, pipeline: Sequence[Mapping[str, Any]], *, session: Any = None
    ) -> List[Document]:
        """Run an aggregation pipeline and return every resulting document."""
        ...

    @abstractmethod
    async def create_index(
        self,
        collection: str,
        keys: IndexKeys,
        *,
        unique: bool = False,
        expire_after_seconds: Optional[int] = None,
    ) -> str:
        """Create an index if it does not exist and return its name."""
        ...

    @abstractmethod
    def transaction(self) -> AsyncContextManager[Any]:
        """Open a session with a started transaction.

        Commits when the block exits cleanly, aborts when it raises.
        """
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Check connectivity.

        Raises:
            StoreError: If the backend cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release driver resources."""
        ...


def index_name(keys: IndexKeys) -> str:
    """Build the conventional index name, e.g. ``id_1`` or ``a_1_b_-1``."""
    return "_".join(f"{field}_{direction}" for field, direction in keys)
