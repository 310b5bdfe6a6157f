"""
Distributed locking on top of the document store.

Invariants:
    - Locks are plain documents; no in-process mutex is involved, so locks
      coordinate across processes sharing a database
"""

from .lock_manager import LockManager, LockState
from .lock_store import LockStore

__all__ = [
    "LockManager",
    "LockState",
    "LockStore",
]
