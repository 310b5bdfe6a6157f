"""
Error types for the resource client.

This module defines every exception raised by the library:
- ResourceClientError: Base exception
- Lock errors: AlreadyLockedError, NotLockedError,
  LockAcquisitionTimeoutError, LockInterruptedError
- Resource errors: NotFoundError, LengthMismatchError, CreateFailedError,
  TransactionAbortedError, InvalidUpdateError
- Storage errors: StoreError, DuplicateKeyError
- ConfigurationError

Invariants:
    - All errors inherit from ResourceClientError
    - Every error carries a stable `code` and a `details` dict
    - DuplicateKeyError messages always contain "duplicate key"

How to change safely:
    - Never change an existing `code`, callers branch on it
    - Add new details keys rather than renaming existing ones
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class ResourceClientError(Exception):
    """Base exception for all resource client errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "RESOURCE_CLIENT_ERROR"
        self.details = details or {}


def _ids(resource_ids: Optional[Sequence[Any]]) -> list:
    return [str(i) for i in resource_ids] if resource_ids is not None else []


# =============================================================================
# Storage
# =============================================================================


class StoreError(ResourceClientError):
    """The storage engine rejected or failed an operation.

    Attributes:
        transient: The whole transaction may be retried (write conflicts,
            primary step-down)
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message, code=code or "STORE_ERROR", details=details)
        self.transient = transient


class DuplicateKeyError(StoreError):
    """A unique index was violated.

    Raised by store adapters on insert/update. The message always
    contains "duplicate key" so contention detection can rely on it.
    """

    def __init__(self, collection: str, key: Any) -> None:
        super().__init__(
            f"E11000 duplicate key error collection: {collection} dup key: {key}",
            code="DUPLICATE_KEY",
            details={"collection": collection, "key": key},
        )
        self.collection = collection
        self.key = key


class ConfigurationError(ResourceClientError):
    """Configuration values are missing or inconsistent."""

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"setting": setting},
        )
        self.setting = setting


# =============================================================================
# Locking
# =============================================================================


class AlreadyLockedError(ResourceClientError):
    """The resource is already locked by another holder."""

    def __init__(self, resource_ids: Sequence[Any], key: str) -> None:
        super().__init__(
            f"Resource '{key}' is already locked",
            code="ALREADY_LOCKED",
            details={"resource_ids": _ids(resource_ids), "key": key},
        )
        self.resource_ids = list(resource_ids)
        self.key = key


class NotLockedError(ResourceClientError):
    """Unlock was requested but no lock document existed."""

    def __init__(self, resource_ids: Sequence[Any], key: str) -> None:
        super().__init__(
            f"Resource '{key}' is not locked",
            code="NOT_LOCKED",
            details={"resource_ids": _ids(resource_ids), "key": key},
        )
        self.resource_ids = list(resource_ids)
        self.key = key


class LockAcquisitionTimeoutError(ResourceClientError):
    """The lock could not be acquired within the wait timeout."""

    def __init__(self, resource_ids: Sequence[Any], wait_timeout: float) -> None:
        super().__init__(
            f"Could not acquire lock on {_ids(resource_ids)} within {wait_timeout:.3f}s",
            code="LOCK_ACQUISITION_TIMEOUT",
            details={
                "resource_ids": _ids(resource_ids),
                "wait_timeout_ms": int(wait_timeout * 1000),
            },
        )
        self.resource_ids = list(resource_ids)
        self.wait_timeout = wait_timeout


class LockInterruptedError(ResourceClientError):
    """The critical section outlived the lock timeout.

    The lock has been released; the critical section may still be running.
    """

    def __init__(self, resource_ids: Sequence[Any], lock_timeout: float) -> None:
        super().__init__(
            f"Lock on {_ids(resource_ids)} released after {lock_timeout:.3f}s "
            "before the critical section finished",
            code="LOCK_INTERRUPTED",
            details={
                "resource_ids": _ids(resource_ids),
                "lock_timeout_ms": int(lock_timeout * 1000),
            },
        )
        self.resource_ids = list(resource_ids)
        self.lock_timeout = lock_timeout


# =============================================================================
# Resources
# =============================================================================


class NotFoundError(ResourceClientError):
    """Resource not found.

    Raised when:
    - The document does not exist
    - The document exists but is not reachable through its ancestors
    - A parent reference to remove does not exist
    """

    def __init__(self, resource_name: str, resource_ids: Sequence[Any]) -> None:
        super().__init__(
            f"{resource_name} {_ids(resource_ids)} not found",
            code="NOT_FOUND",
            details={"resource_name": resource_name, "resource_ids": _ids(resource_ids)},
        )
        self.resource_name = resource_name
        self.resource_ids = list(resource_ids)


class LengthMismatchError(ResourceClientError):
    """Number of ids does not match the resource path depth."""

    def __init__(
        self,
        resource_path: Sequence[str],
        resource_ids: Sequence[Any],
        expected_length: int,
    ) -> None:
        super().__init__(
            f"Expected {expected_length} resource ids for path "
            f"{'/'.join(resource_path) or '<root>'}, got {len(resource_ids)}",
            code="LENGTH_MISMATCH",
            details={
                "resource_path": list(resource_path),
                "resource_ids": _ids(resource_ids),
                "expected_length": expected_length,
                "actual_length": len(resource_ids),
            },
        )
        self.expected_length = expected_length
        self.actual_length = len(resource_ids)


class CreateFailedError(ResourceClientError):
    """Create could not complete (duplicate id, missing parent)."""

    def __init__(self, resource_ids: Sequence[Any], reason: str) -> None:
        super().__init__(
            f"Could not create {_ids(resource_ids)}: {reason}",
            code="CREATE_FAILED",
            details={"resource_ids": _ids(resource_ids), "reason": reason},
        )
        self.resource_ids = list(resource_ids)
        self.reason = reason


class TransactionAbortedError(ResourceClientError):
    """A multi-document transaction failed and was rolled back.

    The original cause is chained as __cause__.
    """

    def __init__(self, operation: str, resource_ids: Sequence[Any], cause: str) -> None:
        super().__init__(
            f"Transaction for {operation} on {_ids(resource_ids)} aborted: {cause}",
            code="TRANSACTION_ABORTED",
            details={"operation": operation, "resource_ids": _ids(resource_ids)},
        )
        self.operation = operation
        self.resource_ids = list(resource_ids)


class InvalidUpdateError(ResourceClientError):
    """Update payload does not fit its declared variant."""

    def __init__(self, message: str, keys: Optional[Sequence[str]] = None) -> None:
        super().__init__(
            message,
            code="INVALID_UPDATE",
            details={"keys": list(keys or [])},
        )
