"""
ResourceClient - entry point owning the store lifecycle.

The client creates (or receives) one ResourceStore and hands it to every
component it builds, so all components share the same connection pool.

Invariants:
    - An injected store is never closed by the client
    - A store built from configuration is closed by close()
    - Components are only handed out after connect()

How to change safely:
    - New components get a factory method here that passes self.store
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Union

from .config import ClientConfig
from .errors import ResourceClientError, StoreError
from .events import Observer
from .locking import LockManager, LockStore
from .resources import HierarchicalCoordinator, ResourceHistory, SimpleResourceStorage
from .store import ResourceStore, create_resource_store

logger = logging.getLogger(__name__)


class ResourceClient:
    """Connects to the database and builds storage components.

    Example:
        >>> async with ResourceClient() as client:
        ...     queues = client.hierarchy("queues", "api_clients")
        ...     await queues.create(["c1", "q1"], {"name": "orders"})
        ...     locks = client.lock_manager()
        ...     await locks.do_while_locked(["q1"], drain_queue)
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        store: Optional[ResourceStore] = None,
        motor_client: Optional[Any] = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client configuration (loaded from env if not provided)
            store: Store to use instead of building one; the caller owns it
            motor_client: Preconfigured motor client; the caller owns it
        """
        self.config = config or ClientConfig.from_env()
        self._store = store
        self._motor_client = motor_client
        self._owns_store = store is None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def store(self) -> ResourceStore:
        if self._store is None or not self._connected:
            raise ResourceClientError("ResourceClient is not connected", code="NOT_CONNECTED")
        return self._store

    async def connect(self) -> None:
        """Build the store if needed and verify connectivity.

        Raises:
            StoreError: If the database cannot be reached
        """
        if self._connected:
            return
        if self._store is None:
            self._store = create_resource_store(self.config, self._motor_client)
        try:
            await self._store.ping()
        except StoreError:
            if self._owns_store:
                await self._store.close()
                self._store = None
            raise
        self._connected = True
        self.config.log_config()

    async def close(self) -> None:
        """Close the store if this client created it."""
        if not self._connected:
            return
        if self._owns_store and self._store is not None:
            await self._store.close()
            self._store = None
        self._connected = False
        logger.info("ResourceClient closed")

    async def __aenter__(self) -> ResourceClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def lock_manager(self) -> LockManager:
        """LockManager using the configured lock collection and timeouts."""
        settings = self.config.lock
        return LockManager(
            LockStore(self.store, settings.collection_name, settings.ttl_seconds),
            lock_timeout=settings.lock_timeout,
            wait_timeout=settings.wait_timeout,
            retry_interval=settings.retry_interval,
        )

    def simple_storage(
        self,
        collection_name: str,
        *,
        indexes: Optional[Sequence[Any]] = None,
        observers: Optional[List[Observer]] = None,
    ) -> SimpleResourceStorage:
        return SimpleResourceStorage(self.store, collection_name, indexes, observers)

    def hierarchy(
        self,
        resource_name: str,
        resource_path: Union[str, Sequence[str]],
        *,
        enable_two_way_references: bool = False,
        hidden_resource_path: Union[str, Sequence[str]] = (),
        indexes: Optional[Sequence[Any]] = None,
        observers: Optional[List[Observer]] = None,
    ) -> HierarchicalCoordinator:
        return HierarchicalCoordinator(
            self.store,
            resource_name,
            resource_path,
            enable_two_way_references=enable_two_way_references,
            hidden_resource_path=hidden_resource_path,
            indexes=indexes,
            observers=observers,
        )

    def history(self, collection_name: str) -> ResourceHistory:
        return ResourceHistory(self.store, collection_name)
