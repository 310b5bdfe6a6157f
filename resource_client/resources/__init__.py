"""
Resource storage components.

- SimpleResourceStorage: root-level resources in one collection
- ReferenceStore: child-id arrays on parent documents
- HierarchicalCoordinator: resources nested under parent collections
- ResourceHistory: observer recording change history

All components take the store as a constructor argument and share it.
"""

from .base import FieldSet, RawOperator, Update, as_ids
from .hierarchy import HierarchicalCoordinator
from .history import ResourceHistory
from .references import ReferenceStore
from .simple import SimpleResourceStorage

__all__ = [
    # Updates
    "FieldSet",
    "RawOperator",
    "Update",
    # Helpers
    "as_ids",
    # Components
    "SimpleResourceStorage",
    "ReferenceStore",
    "HierarchicalCoordinator",
    "ResourceHistory",
]
