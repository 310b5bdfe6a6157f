"""
resource-client - resource storage and distributed locking on MongoDB.

This package provides:
- LockManager: mutual exclusion across processes built from lock documents,
  with polling acquisition, a hold timeout and guaranteed release
- HierarchicalCoordinator: resources nested under parent collections, kept
  consistent with their parents' child-id arrays by transactions
- SimpleResourceStorage: single-collection CRUD
- ResourceHistory: change history recorded from post-commit events

Example:
    >>> from resource_client import ResourceClient, FieldSet
    >>>
    >>> async with ResourceClient() as client:
    ...     listeners = client.hierarchy("listeners", "api_clients/queues")
    ...     await listeners.create(["c1", "q1", "l1"], {"url": "https://example.com"})
    ...     await listeners.update(["c1", "q1", "l1"], FieldSet({"enabled": False}))

Invariants:
    - Every component receives its store explicitly
    - A nested resource and its parent reference change together or not at all
    - A lock is released on every exit path of do_while_locked()

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import ResourceClient
from .config import ClientConfig
from .errors import (
    AlreadyLockedError,
    ConfigurationError,
    CreateFailedError,
    DuplicateKeyError,
    InvalidUpdateError,
    LengthMismatchError,
    LockAcquisitionTimeoutError,
    LockInterruptedError,
    NotFoundError,
    NotLockedError,
    ResourceClientError,
    StoreError,
    TransactionAbortedError,
)
from .events import Created, Deleted, ObserverRegistry, ResourceEvent, Updated
from .locking import LockManager, LockState, LockStore
from .observability import setup_logging
from .resources import (
    FieldSet,
    HierarchicalCoordinator,
    RawOperator,
    ReferenceStore,
    ResourceHistory,
    SimpleResourceStorage,
    Update,
)
from .store import (
    InMemoryResourceStore,
    MongoResourceStore,
    ResourceStore,
    create_resource_store,
)

__all__ = [
    # Client
    "ResourceClient",
    "ClientConfig",
    "setup_logging",
    # Store
    "ResourceStore",
    "MongoResourceStore",
    "InMemoryResourceStore",
    "create_resource_store",
    # Locking
    "LockManager",
    "LockStore",
    "LockState",
    # Resources
    "SimpleResourceStorage",
    "ReferenceStore",
    "HierarchicalCoordinator",
    "ResourceHistory",
    "FieldSet",
    "RawOperator",
    "Update",
    # Events
    "ObserverRegistry",
    "ResourceEvent",
    "Created",
    "Updated",
    "Deleted",
    # Errors
    "ResourceClientError",
    "StoreError",
    "DuplicateKeyError",
    "ConfigurationError",
    "AlreadyLockedError",
    "NotLockedError",
    "LockAcquisitionTimeoutError",
    "LockInterruptedError",
    "NotFoundError",
    "LengthMismatchError",
    "CreateFailedError",
    "TransactionAbortedError",
    "InvalidUpdateError",
]
