"""
In-memory document store implementation for testing.

This module provides an in-process ResourceStore for:
- Unit tests
- Integration tests
- Local development without a MongoDB replica set

Invariants:
    - All data is lost on process exit
    - Unique indexes are enforced on every write, including at commit
    - A transaction sees a private snapshot plus its own writes; other
      writers see nothing until commit
    - Commit fails with a write conflict when another writer changed a
      document this transaction also wrote
    - TTL expiry runs like the server's TTL monitor: at most once per
      ttl_monitor_interval, or on demand via expire_ttl_documents()

How to change safely:
    - Keep interface compatible with the ResourceStore protocol
    - New aggregation stages go in _run_stage(); unknown stages must raise
    - Add features that help with testing scenarios (see inject_failure)
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Deque, Dict, List, Mapping, Optional, Sequence, Set

from bson import ObjectId

from ..errors import DuplicateKeyError, StoreError
from . import query
from .base import Document, IndexKeys, UpdateOutcome, index_name

logger = logging.getLogger(__name__)


@dataclass
class IndexSpec:
    """Index definition kept by an in-memory collection."""

    keys: List[tuple]
    unique: bool = False
    expire_after_seconds: Optional[int] = None

    def key_of(self, document: Mapping[str, Any]) -> tuple:
        values = []
        for path, _direction in self.keys:
            value = query.get_path(document, path)
            values.append(None if query.is_missing(value) else _hashable(value))
        return tuple(values)


def _hashable(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_hashable(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, _hashable(v)) for k, v in value.items()))
    return value


@dataclass
class InMemoryCollection:
    """Committed state of one collection.

    `documents` keeps insertion order (natural order); `versions` is bumped
    on every committed write to a document and drives conflict detection.
    """

    documents: Dict[ObjectId, Document] = field(default_factory=dict)
    versions: Dict[ObjectId, int] = field(default_factory=dict)
    indexes: Dict[str, IndexSpec] = field(default_factory=dict)


@dataclass
class _Workspace:
    """A transaction's private copy of one collection."""

    documents: Dict[ObjectId, Document]
    base_versions: Dict[ObjectId, int]
    written: Set[ObjectId] = field(default_factory=set)


class InMemorySession:
    """Transaction handle returned by InMemoryResourceStore.transaction()."""

    _ids = itertools.count(1)

    def __init__(self) -> None:
        self.session_id = next(self._ids)
        self.workspaces: Dict[str, _Workspace] = {}
        self.active = True

    def __repr__(self) -> str:
        return f"InMemorySession(id={self.session_id}, active={self.active})"


@dataclass
class _InjectedFailure:
    operation: str
    collection: Optional[str]
    error: BaseException
    remaining: int


class InMemoryResourceStore:
    """In-memory implementation of ResourceStore for testing.

    Attributes:
        ttl_monitor_interval: Minimum seconds between TTL sweeps (the
            server's TTL monitor runs every 60 seconds)
        operation_counts: Number of calls per operation name, for tests
            that assert a code path performed no I/O

    Example:
        >>> store = InMemoryResourceStore()
        >>> await store.insert_one("queues", {"id": "q1"})
        >>> await store.find_one("queues", {"id": "q1"})
    """

    def __init__(self, ttl_monitor_interval: float = 60.0) -> None:
        self.ttl_monitor_interval = ttl_monitor_interval
        self._collections: Dict[str, InMemoryCollection] = {}
        self._failures: Deque[_InjectedFailure] = deque()
        self._last_ttl_sweep = time.monotonic()
        self.operation_counts: Dict[str, int] = {}
        self._closed = False

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def inject_failure(
        self,
        operation: str,
        error: BaseException,
        *,
        collection: Optional[str] = None,
        times: int = 1,
    ) -> None:
        """Make the next `times` calls of `operation` raise `error`.

        Args:
            operation: Method name, e.g. "delete_one" or "update_one"
            error: Exception instance to raise
            collection: Only fail calls on this collection
            times: How many calls should fail
        """
        self._failures.append(_InjectedFailure(operation, collection, error, times))

    @property
    def total_operations(self) -> int:
        return sum(self.operation_counts.values())

    def collection_names(self) -> List[str]:
        return sorted(self._collections)

    def expire_ttl_documents(self, now: Optional[datetime] = None) -> int:
        """Run a TTL sweep immediately and return the number of removed documents."""
        now = now or datetime.now(timezone.utc)
        removed = 0
        for name, collection in self._collections.items():
            for spec in collection.indexes.values():
                if spec.expire_after_seconds is None:
                    continue
                path = spec.keys[0][0]
                ttl = timedelta(seconds=spec.expire_after_seconds)
                for oid, document in list(collection.documents.items()):
                    value = query.get_path(document, path)
                    if isinstance(value, datetime) and _aware(value) + ttl <= now:
                        del collection.documents[oid]
                        collection.versions[oid] = collection.versions.get(oid, 0) + 1
                        removed += 1
                        logger.debug(
                            "TTL expired document",
                            extra={"collection": name, "field": path},
                        )
        self._last_ttl_sweep = time.monotonic()
        return removed

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _enter(self, operation: str, collection: Optional[str], session: Any) -> None:
        if self._closed:
            raise StoreError("Store is closed")
        self.operation_counts[operation] = self.operation_counts.get(operation, 0) + 1
        # Every call is a suspension point, as it would be with a network round trip
        await asyncio.sleep(0)
        if time.monotonic() - self._last_ttl_sweep >= self.ttl_monitor_interval:
            self.expire_ttl_documents()
        if session is not None and not session.active:
            raise StoreError("Transaction is no longer active")
        for failure in list(self._failures):
            if failure.operation == operation and failure.collection in (None, collection):
                failure.remaining -= 1
                if failure.remaining <= 0:
                    self._failures.remove(failure)
                raise failure.error

    def _collection(self, name: str) -> InMemoryCollection:
        if name not in self._collections:
            self._collections[name] = InMemoryCollection()
        return self._collections[name]

    def _documents(self, name: str, session: Optional[InMemorySession]) -> Dict[ObjectId, Document]:
        return self._view(name, session).documents if session else self._collection(name).documents

    def _view(self, name: str, session: InMemorySession) -> _Workspace:
        if name not in session.workspaces:
            committed = self._collection(name)
            session.workspaces[name] = _Workspace(
                documents=copy.deepcopy(committed.documents),
                base_versions=dict(committed.versions),
            )
        return session.workspaces[name]

    def _mark_written(self, name: str, oid: ObjectId, session: Optional[InMemorySession]) -> None:
        if session:
            self._view(name, session).written.add(oid)
        else:
            versions = self._collection(name).versions
            versions[oid] = versions.get(oid, 0) + 1

    def _check_unique(
        self,
        name: str,
        documents: Mapping[ObjectId, Document],
        candidate_id: ObjectId,
        candidate: Document,
    ) -> None:
        for spec in self._collection(name).indexes.values():
            if not spec.unique:
                continue
            key = spec.key_of(candidate)
            for oid, other in documents.items():
                if oid != candidate_id and spec.key_of(other) == key:
                    raise DuplicateKeyError(
                        name, dict(zip((path for path, _ in spec.keys), key))
                    )

    def _first_match(
        self, documents: Mapping[ObjectId, Document], filter: Mapping[str, Any]
    ) -> Optional[ObjectId]:
        for oid, document in documents.items():
            if query.matches(document, filter):
                return oid
        return None

    # -------------------------------------------------------------------------
    # ResourceStore protocol
    # -------------------------------------------------------------------------

    async def insert_one(
        self, collection: str, document: Mapping[str, Any], *, session: Any = None
    ) -> Any:
        await self._enter("insert_one", collection, session)
        documents = self._documents(collection, session)
        stored = copy.deepcopy(dict(document))
        oid = stored.setdefault("_id", ObjectId())
        if oid in documents:
            raise DuplicateKeyError(collection, {"_id": oid})
        self._check_unique(collection, documents, oid, stored)
        documents[oid] = stored
        self._mark_written(collection, oid, session)
        return oid

    async def update_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        session: Any = None,
        upsert: bool = False,
    ) -> UpdateOutcome:
        await self._enter("update_one", collection, session)
        documents = self._documents(collection, session)
        oid = self._first_match(documents, filter)

        if oid is None:
            if not upsert:
                return UpdateOutcome(matched_count=0, modified_count=0)
            created = copy.deepcopy(query.equality_fields(filter))
            query.apply_update(created, update, inserting=True)
            new_id = created.setdefault("_id", ObjectId())
            self._check_unique(collection, documents, new_id, created)
            documents[new_id] = created
            self._mark_written(collection, new_id, session)
            return UpdateOutcome(matched_count=0, modified_count=0, upserted_id=new_id)

        updated = copy.deepcopy(documents[oid])
        changed = query.apply_update(updated, update)
        if not changed:
            return UpdateOutcome(matched_count=1, modified_count=0)
        self._check_unique(collection, documents, oid, updated)
        documents[oid] = updated
        self._mark_written(collection, oid, session)
        return UpdateOutcome(matched_count=1, modified_count=1)

    async def delete_one(
        self, collection: str, filter: Mapping[str, Any], *, session: Any = None
    ) -> int:
        await self._enter("delete_one", collection, session)
        documents = self._documents(collection, session)
        oid = self._first_match(documents, filter)
        if oid is None:
            return 0
        del documents[oid]
        self._mark_written(collection, oid, session)
        return 1

    async def find_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        *,
        projection: Optional[Mapping[str, Any]] = None,
        session: Any = None,
    ) -> Optional[Document]:
        await self._enter("find_one", collection, session)
        documents = self._documents(collection, session)
        oid = self._first_match(documents, filter)
        if oid is None:
            return None
        return query.project(documents[oid], projection)

    async def aggregate(
        self, collection: str, pipeline: Sequence[Mapping[str, Any]], *, session: Any = None
    ) -> List[Document]:
        await self._enter("aggregate", collection, session)
        documents = [copy.deepcopy(d) for d in self._documents(collection, session).values()]
        return self._run_pipeline(documents, pipeline, session)

    async def create_index(
        self,
        collection: str,
        keys: IndexKeys,
        *,
        unique: bool = False,
        expire_after_seconds: Optional[int] = None,
    ) -> str:
        await self._enter("create_index", collection, None)
        name = index_name(keys)
        target = self._collection(collection)
        spec = IndexSpec(list(keys), unique=unique, expire_after_seconds=expire_after_seconds)
        existing = target.indexes.get(name)
        if existing is not None:
            if existing != spec:
                raise StoreError(
                    f"Index {name} already exists with different options",
                    code="INDEX_OPTIONS_CONFLICT",
                )
            return name
        if unique:
            seen: Set[tuple] = set()
            for document in target.documents.values():
                key = spec.key_of(document)
                if key in seen:
                    raise DuplicateKeyError(collection, key)
                seen.add(key)
        target.indexes[name] = spec
        return name

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemorySession]:
        session = InMemorySession()
        logger.debug("Transaction started", extra={"session_id": session.session_id})
        try:
            yield session
        except BaseException:
            session.active = False
            session.workspaces.clear()
            logger.debug("Transaction aborted", extra={"session_id": session.session_id})
            raise
        self._commit(session)

    def _commit(self, session: InMemorySession) -> None:
        session.active = False
        # Validate everything before applying anything
        for name, workspace in session.workspaces.items():
            committed = self._collection(name)
            for oid in workspace.written:
                if committed.versions.get(oid, 0) != workspace.base_versions.get(oid, 0):
                    raise StoreError(
                        f"WriteConflict on collection {name}: document changed by another writer",
                        code="WRITE_CONFLICT",
                        details={"collection": name},
                        transient=True,
                    )
            merged = dict(committed.documents)
            for oid in workspace.written:
                if oid in workspace.documents:
                    merged[oid] = workspace.documents[oid]
                else:
                    merged.pop(oid, None)
            for oid in workspace.written:
                if oid in workspace.documents:
                    self._check_unique(name, merged, oid, workspace.documents[oid])

        for name, workspace in session.workspaces.items():
            committed = self._collection(name)
            for oid in workspace.written:
                if oid in workspace.documents:
                    committed.documents[oid] = workspace.documents[oid]
                else:
                    committed.documents.pop(oid, None)
                committed.versions[oid] = committed.versions.get(oid, 0) + 1
        logger.debug("Transaction committed", extra={"session_id": session.session_id})

    async def ping(self) -> None:
        if self._closed:
            raise StoreError("Store is closed")

    async def close(self) -> None:
        """Close and clear all data."""
        self._closed = True
        self._collections.clear()
        self._failures.clear()
        logger.debug("InMemoryResourceStore closed")

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def _run_pipeline(
        self,
        documents: List[Document],
        pipeline: Sequence[Mapping[str, Any]],
        session: Optional[InMemorySession],
    ) -> List[Document]:
        for stage in pipeline:
            if len(stage) != 1:
                raise StoreError(f"A pipeline stage must have exactly one field: {stage}")
            (name, spec), = stage.items()
            documents = self._run_stage(name, spec, documents, session)
        return documents

    def _run_stage(
        self,
        name: str,
        spec: Any,
        documents: List[Document],
        session: Optional[InMemorySession],
    ) -> List[Document]:
        if name == "$match":
            return [d for d in documents if query.matches(d, spec)]
        if name == "$project":
            return [query.project(d, spec) for d in documents]
        if name == "$unset":
            fields = [spec] if isinstance(spec, str) else spec
            return [query.project(d, {f: 0 for f in fields}) for d in documents]
        if name == "$limit":
            return documents[: int(spec)]
        if name == "$skip":
            return documents[int(spec):]
        if name == "$sort":
            return query.sort_documents(documents, spec)
        if name == "$count":
            return [{spec: len(documents)}] if documents else []
        if name == "$unwind":
            path = spec if isinstance(spec, str) else spec["path"]
            return self._unwind(documents, path.lstrip("$"))
        if name == "$replaceRoot":
            return self._replace_root(documents, spec["newRoot"])
        if name == "$lookup":
            return self._lookup(documents, spec, session)
        raise StoreError(f"Unsupported aggregation stage: {name}")

    @staticmethod
    def _unwind(documents: List[Document], path: str) -> List[Document]:
        unwound = []
        for document in documents:
            value = query.get_path(document, path)
            if query.is_missing(value) or value is None or value == []:
                continue
            for item in value if isinstance(value, list) else [value]:
                copy_ = copy.deepcopy(document)
                query.set_path(copy_, path, item)
                unwound.append(copy_)
        return unwound

    @staticmethod
    def _replace_root(documents: List[Document], new_root: Any) -> List[Document]:
        if not isinstance(new_root, str) or not new_root.startswith("$"):
            raise StoreError("$replaceRoot only supports a field path as newRoot")
        replaced = []
        for document in documents:
            value = query.get_path(document, new_root[1:])
            if not isinstance(value, dict):
                raise StoreError(f"'newRoot' expression must evaluate to an object: {new_root}")
            replaced.append(value)
        return replaced

    def _lookup(
        self,
        documents: List[Document],
        spec: Mapping[str, Any],
        session: Optional[InMemorySession],
    ) -> List[Document]:
        if "let" in spec:
            raise StoreError("$lookup with 'let' is not supported in memory")
        foreign = list(self._documents(spec["from"], session).values())
        local_field = spec.get("localField")
        foreign_field = spec.get("foreignField")
        sub_pipeline = spec.get("pipeline", [])
        joined = []
        for document in documents:
            candidates = foreign
            if local_field is not None:
                local = query.get_path(document, local_field)
                local_values = (
                    [None] if query.is_missing(local)
                    else local if isinstance(local, list) else [local]
                )
                candidates = [
                    f for f in foreign
                    if any(query.matches(f, {foreign_field: v}) for v in local_values)
                ]
            result = self._run_pipeline([copy.deepcopy(c) for c in candidates], sub_pipeline, session)
            merged = copy.deepcopy(document)
            query.set_path(merged, spec["as"], result)
            joined.append(merged)
        return joined


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
