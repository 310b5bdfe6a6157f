"""
Distributed mutual exclusion built on lock documents.

LockManager polls to acquire a lock, runs a critical section while the lock
is held, and force-releases the lock when the critical section runs longer
than the lock timeout.

Lifecycle of one do_while_locked() call:

    IDLE -> ACQUIRING -> HELD -> COMPLETED | FAILED | TIMED_OUT -> RELEASED

Invariants:
    - Acquisition never waits longer than wait_timeout (plus one store call)
    - The lock is released on every exit path once it was acquired
    - A failed release never replaces the error that ended the critical
      section (LockInterruptedError or the section's own exception)
    - A timed-out critical section is NOT cancelled; it keeps running after
      the lock is gone, and its outcome is only logged
    - Only "already exists" / "duplicate key" failures count as contention,
      every other store failure propagates immediately

How to change safely:
    - Release on every exit path; a leaked lock blocks every waiter until
      the TTL monitor removes it
    - Timing tests in tests/unit/test_lock_manager.py assume the polling
      loop sleeps retry_interval between attempts
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar, Union

from ..documents import ResourceId, composite_id
from ..errors import (
    AlreadyLockedError,
    LockAcquisitionTimeoutError,
    LockInterruptedError,
    NotLockedError,
    StoreError,
)
from .lock_store import LockStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
CriticalSection = Callable[[], Union[Awaitable[T], T]]

_CONTENTION_MARKERS = ("already exists", "duplicate key")


class LockState(Enum):
    """States of a do_while_locked() call."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    HELD = "held"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    RELEASED = "released"


class LockManager:
    """Acquires, releases, and holds locks around critical sections.

    Attributes:
        lock_store: Persistence for lock documents
        lock_timeout: Seconds a critical section may hold the lock
        wait_timeout: Seconds to keep retrying acquisition
        retry_interval: Seconds between acquisition attempts

    Example:
        >>> manager = LockManager(LockStore(store))
        >>> await manager.do_while_locked(["api_client_1"], rotate_keys)
    """

    def __init__(
        self,
        lock_store: LockStore,
        lock_timeout: float = 5.0,
        wait_timeout: float = 5.0,
        retry_interval: float = 0.125,
    ) -> None:
        self.lock_store = lock_store
        self.lock_timeout = lock_timeout
        self.wait_timeout = wait_timeout
        self.retry_interval = retry_interval

    async def lock(self, resource_ids: Sequence[ResourceId]) -> None:
        """Create the lock document.

        Raises:
            AlreadyLockedError: If the resource is already locked
        """
        try:
            await self.lock_store.insert(resource_ids)
        except Exception as e:
            if any(marker in str(e) for marker in _CONTENTION_MARKERS):
                raise AlreadyLockedError(resource_ids, composite_id(resource_ids)) from e
            raise

    async def unlock(self, resource_ids: Sequence[ResourceId]) -> None:
        """Delete the lock document.

        Raises:
            NotLockedError: If no lock document existed
        """
        deleted = await self.lock_store.delete(resource_ids)
        if deleted == 0:
            raise NotLockedError(resource_ids, composite_id(resource_ids))

    async def do_while_locked(
        self,
        resource_ids: Sequence[ResourceId],
        critical_section: CriticalSection[T],
        *,
        lock_timeout: Optional[float] = None,
        wait_timeout: Optional[float] = None,
        retry_interval: Optional[float] = None,
    ) -> T:
        """Run critical_section while holding the lock for resource_ids.

        Args:
            resource_ids: Ids identifying the locked resource
            critical_section: Zero-argument callable, sync or async
            lock_timeout: Override of the maximum hold time (seconds)
            wait_timeout: Override of the maximum acquisition wait (seconds)
            retry_interval: Override of the acquisition poll interval (seconds)

        Returns:
            Whatever critical_section returned

        Raises:
            LockAcquisitionTimeoutError: Lock not acquired within wait_timeout
            LockInterruptedError: critical_section outlived lock_timeout
            Exception: Any error raised by critical_section
        """
        lock_timeout = self.lock_timeout if lock_timeout is None else lock_timeout
        key = composite_id(resource_ids)

        self._transition(LockState.ACQUIRING, key)
        await self._acquire(resource_ids, wait_timeout, retry_interval)
        self._transition(LockState.HELD, key)

        task = asyncio.ensure_future(_invoke(critical_section))
        try:
            done, _ = await asyncio.wait({task}, timeout=lock_timeout)
        except asyncio.CancelledError:
            task.cancel()
            await self._release_after_error(resource_ids)
            raise

        if task not in done:
            self._transition(LockState.TIMED_OUT, key)
            logger.warning(
                "Critical section exceeded lock timeout, releasing lock",
                extra={"lock_key": key, "lock_timeout_ms": int(lock_timeout * 1000)},
            )
            task.add_done_callback(_log_abandoned_outcome(key))
            await self._release_after_error(resource_ids)
            raise LockInterruptedError(resource_ids, lock_timeout)

        if task.exception() is not None:
            self._transition(LockState.FAILED, key)
            await self._release_after_error(resource_ids)
            return task.result()

        self._transition(LockState.COMPLETED, key)
        await self._release(resource_ids)
        return task.result()

    @asynccontextmanager
    async def lock_context(
        self,
        resource_ids: Sequence[ResourceId],
        *,
        wait_timeout: Optional[float] = None,
        retry_interval: Optional[float] = None,
    ) -> AsyncIterator[None]:
        """Hold the lock for the duration of an ``async with`` block.

        There is no watchdog here; the TTL index is the only safety net.

        Example:
            >>> async with manager.lock_context(["queue_1"]):
            ...     await rebalance()
        """
        await self._acquire(resource_ids, wait_timeout, retry_interval)
        try:
            yield
        except BaseException:
            await self._release_after_error(resource_ids)
            raise
        await self._release(resource_ids)

    async def _acquire(
        self,
        resource_ids: Sequence[ResourceId],
        wait_timeout: Optional[float],
        retry_interval: Optional[float],
    ) -> None:
        wait_timeout = self.wait_timeout if wait_timeout is None else wait_timeout
        retry_interval = self.retry_interval if retry_interval is None else retry_interval
        start = time.monotonic()
        attempts = 0

        while True:
            attempts += 1
            try:
                await self.lock(resource_ids)
                logger.debug(
                    "Lock acquired",
                    extra={"lock_key": composite_id(resource_ids), "attempts": attempts},
                )
                return
            except AlreadyLockedError:
                remaining = wait_timeout - (time.monotonic() - start)
                if remaining <= 0:
                    logger.info(
                        "Giving up on lock acquisition",
                        extra={
                            "lock_key": composite_id(resource_ids),
                            "attempts": attempts,
                            "wait_timeout_ms": int(wait_timeout * 1000),
                        },
                    )
                    raise LockAcquisitionTimeoutError(resource_ids, wait_timeout) from None
                await asyncio.sleep(min(retry_interval, remaining))

    async def _release(self, resource_ids: Sequence[ResourceId]) -> None:
        key = composite_id(resource_ids)
        try:
            await self.unlock(resource_ids)
        except NotLockedError:
            # Reaped by the TTL monitor while held
            logger.warning("Lock already gone at release", extra={"lock_key": key})
            return
        self._transition(LockState.RELEASED, key)

    async def _release_after_error(self, resource_ids: Sequence[ResourceId]) -> None:
        """Release while another error is propagating; release failures are logged."""
        try:
            await self._release(resource_ids)
        except StoreError:
            logger.error(
                "Failed to release lock, the TTL index will remove it",
                exc_info=True,
                extra={"lock_key": composite_id(resource_ids)},
            )

    @staticmethod
    def _transition(state: LockState, key: str) -> None:
        logger.debug("Lock state changed", extra={"lock_key": key, "state": state.value})


async def _invoke(critical_section: CriticalSection[T]) -> T:
    result: Any = critical_section()
    if inspect.isawaitable(result):
        result = await result
    return result


def _log_abandoned_outcome(key: str) -> Callable[["asyncio.Future[Any]"], None]:
    def log(task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Critical section failed after its lock was released",
                exc_info=error,
                extra={"lock_key": key},
            )
        else:
            logger.info("Critical section finished after its lock was released", extra={"lock_key": key})

    return log
