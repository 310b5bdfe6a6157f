"""
Document conventions shared by every storage component.

Invariants:
    - A resource's identity is the string stored under ID_FIELD
    - Multi-part identities are joined with '#', single ids stay as-is
    - _meta_data timestamps are timezone-aware UTC datetimes
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

ID_FIELD = "id"
METADATA_FIELD = "_meta_data"
CREATED_AT = f"{METADATA_FIELD}.created_at"
UPDATED_AT = f"{METADATA_FIELD}.updated_at"
COMPOSITE_SEPARATOR = "#"

ResourceId = Union[str, int]


def utcnow() -> datetime:
    """Current time in UTC, truncated to milliseconds as BSON stores it."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def composite_id(resource_ids: Union[ResourceId, Sequence[ResourceId]]) -> str:
    """Deterministic key for a sequence of ids.

    >>> composite_id(["a", "b"])
    'a#b'
    >>> composite_id(["a"])
    'a'
    """
    if isinstance(resource_ids, (str, int)):
        return str(resource_ids)
    return COMPOSITE_SEPARATOR.join(str(i) for i in resource_ids)


def new_metadata(now: Optional[datetime] = None) -> Dict[str, datetime]:
    now = now or utcnow()
    return {"created_at": now, "updated_at": now}


def read_stages(
    with_metadata: bool = False, projection: Optional[Mapping[str, Any]] = None
) -> List[Dict[str, Any]]:
    """Trailing pipeline stages applied to every document returned to callers.

    The storage `_id` is always hidden, `_meta_data` unless requested. A
    caller projection runs as a separate stage after that.
    """
    hidden: Dict[str, Any] = {"_id": 0}
    if not with_metadata:
        hidden[METADATA_FIELD] = 0
    stages: List[Dict[str, Any]] = [{"$project": hidden}]
    if projection:
        stages.append({"$project": dict(projection)})
    return stages
