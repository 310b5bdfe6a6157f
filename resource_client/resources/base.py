"""
Shared building blocks for resource storage components.

- Update variants (FieldSet, RawOperator) and their translation to
  update operators
- Resource id normalization and path-length validation
- Session-aware write primitives used inside transactions
- run_in_transaction(): runs a unit of work in one store transaction,
  retrying transient conflicts and mapping store failures to
  TransactionAbortedError

Invariants:
    - Every write refreshes _meta_data.updated_at
    - Validation helpers never touch the store
    - Domain errors (NotFound, CreateFailed, LengthMismatch, InvalidUpdate)
      leave run_in_transaction() unchanged, store failures are wrapped
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from ..documents import (
    CREATED_AT,
    ID_FIELD,
    METADATA_FIELD,
    UPDATED_AT,
    ResourceId,
    new_metadata,
    utcnow,
)
from ..errors import (
    CreateFailedError,
    DuplicateKeyError,
    InvalidUpdateError,
    LengthMismatchError,
    StoreError,
    TransactionAbortedError,
)
from ..store import Document, ResourceStore, UpdateOutcome

logger = logging.getLogger(__name__)

ResourceIds = Union[ResourceId, Sequence[ResourceId]]
T = TypeVar("T")


# =============================================================================
# Updates
# =============================================================================


@dataclass(frozen=True)
class FieldSet:
    """Replace the given fields; nested fields may use dotted paths.

    Example:
        >>> FieldSet({"name": "orders", "settings.retries": 3})
    """

    fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.fields:
            raise InvalidUpdateError("FieldSet requires at least one field")
        operators = [k for k in self.fields if k.startswith("$")]
        if operators:
            raise InvalidUpdateError(
                "FieldSet keys must be field names, use RawOperator for operators", operators
            )


@dataclass(frozen=True)
class RawOperator:
    """Apply update operators as given, e.g. ``{"$push": {"tags": "x"}}``."""

    operators: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.operators:
            raise InvalidUpdateError("RawOperator requires at least one operator")
        plain = [k for k in self.operators if not k.startswith("$")]
        if plain:
            raise InvalidUpdateError("RawOperator keys must be update operators", plain)


Update = Union[FieldSet, RawOperator]


def to_update_document(
    update: Update, now: Optional[datetime] = None, *, upsert: bool = False
) -> Dict[str, Any]:
    """Translate an Update into an update document with metadata refresh.

    Raises:
        InvalidUpdateError: If update is not a FieldSet or RawOperator
    """
    now = now or utcnow()
    if isinstance(update, FieldSet):
        document: Dict[str, Any] = {"$set": dict(update.fields)}
    elif isinstance(update, RawOperator):
        document = {op: dict(args) for op, args in update.operators.items()}
    else:
        raise InvalidUpdateError(
            f"Expected FieldSet or RawOperator, got {type(update).__name__}"
        )
    document.setdefault("$set", {})[UPDATED_AT] = now
    if upsert:
        document.setdefault("$setOnInsert", {})[CREATED_AT] = now
    return document


# =============================================================================
# Ids and paths
# =============================================================================


def as_ids(resource_ids: ResourceIds) -> Tuple[str, ...]:
    """Normalize a single id or a sequence of ids to a tuple of strings."""
    if isinstance(resource_ids, (str, int)):
        return (str(resource_ids),)
    return tuple(str(i) for i in resource_ids)


def parse_path(resource_path: Union[str, Sequence[str]]) -> Tuple[str, ...]:
    """Accept "a/b" or ("a", "b"); empty segments are dropped."""
    if isinstance(resource_path, str):
        resource_path = resource_path.split("/")
    return tuple(segment for segment in resource_path if segment)


def check_length(
    resource_path: Sequence[str], resource_ids: Any, expected_length: int
) -> Tuple[str, ...]:
    """Validate the id count for a path before any store access.

    Raises:
        LengthMismatchError: If resource_ids is not a sequence of expected_length
    """
    if isinstance(resource_ids, (str, int)) or resource_ids is None:
        raise LengthMismatchError(
            resource_path, [] if resource_ids is None else [resource_ids], expected_length
        )
    ids = as_ids(resource_ids)
    if len(ids) != expected_length:
        raise LengthMismatchError(resource_path, ids, expected_length)
    return ids


# =============================================================================
# Write primitives
# =============================================================================


async def insert_resource(
    store: ResourceStore,
    collection: str,
    resource_ids: Sequence[str],
    resource_id: str,
    resource: Mapping[str, Any],
    *,
    session: Any = None,
) -> Document:
    """Insert a resource document with id and metadata.

    Returns:
        The stored document without _id and _meta_data

    Raises:
        CreateFailedError: If a resource with the same id already exists
    """
    document = {**resource, ID_FIELD: resource_id, METADATA_FIELD: new_metadata()}
    try:
        await store.insert_one(collection, document, session=session)
    except DuplicateKeyError as e:
        raise CreateFailedError(resource_ids, f"{collection} '{resource_id}' already exists") from e
    return {k: v for k, v in document.items() if k not in ("_id", METADATA_FIELD)}


async def update_resource(
    store: ResourceStore,
    collection: str,
    resource_id: str,
    update: Mapping[str, Any],
    *,
    session: Any = None,
    upsert: bool = False,
) -> UpdateOutcome:
    return await store.update_one(
        collection, {ID_FIELD: resource_id}, update, session=session, upsert=upsert
    )


async def delete_resource(
    store: ResourceStore, collection: str, resource_id: str, *, session: Any = None
) -> int:
    return await store.delete_one(collection, {ID_FIELD: resource_id}, session=session)


# =============================================================================
# Transactions
# =============================================================================


async def run_in_transaction(
    store: ResourceStore,
    operation: str,
    resource_ids: Sequence[str],
    work: Callable[[Any], Awaitable[T]],
    *,
    max_attempts: int = 3,
) -> T:
    """Run work(session) in one transaction and return its result.

    The whole transaction is retried when the store reports a transient
    failure such as a write conflict, like the driver's with_transaction().

    Raises:
        TransactionAbortedError: If a store step or the commit failed
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            async with store.transaction() as session:
                return await work(session)
        except StoreError as e:
            if e.transient and attempt < max_attempts:
                logger.info(
                    "Retrying transaction after transient failure",
                    extra={"operation": operation, "attempt": attempt, "error": e.code},
                )
                continue
            logger.warning(
                "Transaction aborted",
                extra={
                    "operation": operation,
                    "resource_ids": list(resource_ids),
                    "error": e.code,
                },
            )
            raise TransactionAbortedError(operation, resource_ids, str(e)) from e
