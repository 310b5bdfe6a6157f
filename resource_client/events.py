"""
Post-commit change notifications.

Storage components hold an ObserverRegistry and notify it after a
transaction commits. Observers receive one typed event per change.

Invariants:
    - Events are delivered only after the change is committed
    - An observer failure is logged and never changes the operation's
      outcome or stops delivery to the remaining observers
    - Observers are called in registration order
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Created:
    """A resource was created."""

    resource_name: str
    resource_ids: Tuple[str, ...]
    after: Dict[str, Any] = field(default_factory=dict)

    action = "create"


@dataclass(frozen=True)
class Updated:
    """A resource was updated; before/after are full snapshots."""

    resource_name: str
    resource_ids: Tuple[str, ...]
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)

    action = "update"


@dataclass(frozen=True)
class Deleted:
    """A resource was deleted; before is the last committed state."""

    resource_name: str
    resource_ids: Tuple[str, ...]
    before: Dict[str, Any] = field(default_factory=dict)

    action = "delete"


ResourceEvent = Union[Created, Updated, Deleted]
Observer = Callable[[ResourceEvent], Union[None, Awaitable[None]]]


class ObserverRegistry:
    """Ordered set of observers notified after commits.

    Example:
        >>> registry = ObserverRegistry()
        >>> registry.register(lambda event: print(event.action))
        >>> await registry.notify(Created("queues", ("c1", "q1"), {"id": "q1"}))
    """

    def __init__(self, observers: Optional[List[Observer]] = None) -> None:
        self._observers: List[Observer] = list(observers or [])

    def register(self, observer: Observer) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unregister(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def __len__(self) -> int:
        return len(self._observers)

    async def notify(self, event: ResourceEvent) -> None:
        """Deliver event to every observer, logging failures."""
        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.error(
                    "Observer failed",
                    exc_info=True,
                    extra={
                        "observer": getattr(observer, "__qualname__", repr(observer)),
                        "resource_name": event.resource_name,
                        "action": event.action,
                    },
                )
