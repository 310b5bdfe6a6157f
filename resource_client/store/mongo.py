"""
MongoDB document store implementation using motor.

The motor client is injected (or built by create_resource_store from
configuration); this module never creates a process-wide client.

Invariants:
    - pymongo DuplicateKeyError is translated to our DuplicateKeyError,
      keeping the server's message (it contains "duplicate key")
    - Other driver failures become StoreError with the cause chained
    - Transactions use the configured read concern, write concern and
      read preference (local / majority / primary by default)

How to change safely:
    - Test against a replica set, standalone servers reject transactions
    - Keep error translation in _translate() so every method agrees
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Mapping, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession
from pymongo import ReadPreference
from pymongo.errors import DuplicateKeyError as PyMongoDuplicateKeyError
from pymongo.errors import PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from ..config import MongoSettings, TransactionSettings
from ..errors import DuplicateKeyError, StoreError
from .base import Document, IndexKeys, UpdateOutcome, index_name

logger = logging.getLogger(__name__)

_READ_PREFERENCES = {
    "primary": ReadPreference.PRIMARY,
    "primaryPreferred": ReadPreference.PRIMARY_PREFERRED,
    "secondary": ReadPreference.SECONDARY,
    "secondaryPreferred": ReadPreference.SECONDARY_PREFERRED,
    "nearest": ReadPreference.NEAREST,
}


def _translate(error: PyMongoError, collection: str) -> StoreError:
    if isinstance(error, PyMongoDuplicateKeyError):
        translated = DuplicateKeyError(collection, (error.details or {}).get("keyValue"))
        # Keep the server text, callers match on it
        translated.message = str(error)
        translated.args = (str(error),)
        return translated
    return StoreError(
        str(error),
        details={"collection": collection, "driver_error": type(error).__name__},
        transient=error.has_error_label("TransientTransactionError"),
    )


class MongoResourceStore:
    """ResourceStore backed by a motor AsyncIOMotorClient.

    Attributes:
        client: The injected motor client
        database_name: Database all collections live in

    Example:
        >>> client = AsyncIOMotorClient("mongodb://localhost:27017/?replicaSet=rs0")
        >>> store = MongoResourceStore(client, "app")
        >>> await store.ping()
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        database_name: str,
        transaction_settings: Optional[TransactionSettings] = None,
        owns_client: bool = False,
        transactions_enabled: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            client: Motor client, owned by the caller unless owns_client
            database_name: Database name
            transaction_settings: Concerns applied to every transaction
            owns_client: Close the client in close()
            transactions_enabled: When false, transaction() yields no session
                and writes apply individually (standalone servers)
        """
        self.client = client
        self.database_name = database_name
        self.database = client[database_name]
        settings = transaction_settings or TransactionSettings()
        self._read_concern = ReadConcern(settings.read_concern)
        write = settings.write_concern
        self._write_concern = WriteConcern(w=int(write) if write.isdigit() else write)
        self._read_preference = _READ_PREFERENCES[settings.read_preference]
        self._owns_client = owns_client
        self._transactions_enabled = transactions_enabled

    @classmethod
    def from_settings(
        cls, mongo: MongoSettings, transaction: Optional[TransactionSettings] = None
    ) -> MongoResourceStore:
        """Build a store that owns a new motor client."""
        client: AsyncIOMotorClient = AsyncIOMotorClient(
            mongo.url,
            connectTimeoutMS=mongo.connect_timeout_ms,
            serverSelectionTimeoutMS=mongo.connect_timeout_ms,
            appname=mongo.app_name,
            tz_aware=True,
        )
        return cls(
            client,
            mongo.database,
            transaction,
            owns_client=True,
            transactions_enabled=mongo.transactions_enabled,
        )

    async def insert_one(
        self, collection: str, document: Mapping[str, Any], *, session: Any = None
    ) -> Any:
        try:
            result = await self.database[collection].insert_one(dict(document), session=session)
        except PyMongoError as e:
            raise _translate(e, collection) from e
        return result.inserted_id

    async def update_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        session: Any = None,
        upsert: bool = False,
    ) -> UpdateOutcome:
        try:
            result = await self.database[collection].update_one(
                dict(filter), dict(update), upsert=upsert, session=session
            )
        except PyMongoError as e:
            raise _translate(e, collection) from e
        return UpdateOutcome(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
            upserted_id=result.upserted_id,
        )

    async def delete_one(
        self, collection: str, filter: Mapping[str, Any], *, session: Any = None
    ) -> int:
        try:
            result = await self.database[collection].delete_one(dict(filter), session=session)
        except PyMongoError as e:
            raise _translate(e, collection) from e
        return result.deleted_count

    async def find_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        *,
        projection: Optional[Mapping[str, Any]] = None,
        session: Any = None,
    ) -> Optional[Document]:
        try:
            return await self.database[collection].find_one(
                dict(filter), projection=dict(projection) if projection else None, session=session
            )
        except PyMongoError as e:
            raise _translate(e, collection) from e

    async def aggregate(
        self, collection: str, pipeline: Sequence[Mapping[str, Any]], *, session: Any = None
    ) -> List[Document]:
        try:
            cursor = self.database[collection].aggregate(
                [dict(stage) for stage in pipeline], session=session
            )
            return await cursor.to_list(length=None)
        except PyMongoError as e:
            raise _translate(e, collection) from e

    async def create_index(
        self,
        collection: str,
        keys: IndexKeys,
        *,
        unique: bool = False,
        expire_after_seconds: Optional[int] = None,
    ) -> str:
        options: dict = {"name": index_name(keys), "unique": unique}
        if expire_after_seconds is not None:
            options["expireAfterSeconds"] = expire_after_seconds
        try:
            return await self.database[collection].create_index(list(keys), **options)
        except PyMongoError as e:
            raise _translate(e, collection) from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
        if not self._transactions_enabled:
            yield None
            return
        try:
            session = await self.client.start_session()
        except PyMongoError as e:
            raise _translate(e, "<session>") from e
        try:
            session.start_transaction(
                read_concern=self._read_concern,
                write_concern=self._write_concern,
                read_preference=self._read_preference,
            )
            try:
                yield session
            except BaseException:
                if session.in_transaction:
                    try:
                        await session.abort_transaction()
                    except PyMongoError:
                        logger.warning("Failed to abort transaction", exc_info=True)
                raise
            try:
                await session.commit_transaction()
            except PyMongoError as e:
                raise _translate(e, "<commit>") from e
        finally:
            await session.end_session()

    async def ping(self) -> None:
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            raise StoreError(f"MongoDB ping failed: {e}", code="CONNECTION_ERROR") from e

    async def close(self) -> None:
        if self._owns_client:
            self.client.close()
        logger.debug("MongoResourceStore closed", extra={"database": self.database_name})
