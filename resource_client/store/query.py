"""
Query, update and projection evaluation for in-process documents.

This is the subset of MongoDB semantics the in-memory store needs to
behave like the real server for everything this library issues, plus
the common operators callers are likely to pass through find().

Invariants:
    - Functions never mutate their inputs except apply_update(), which
      mutates the document it is given
    - Unsupported operators raise StoreError instead of being ignored
"""

from __future__ import annotations

import copy
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import StoreError

_MISSING = object()


# =============================================================================
# Paths
# =============================================================================


def get_path(document: Any, path: str) -> Any:
    """Resolve a dotted path, returning _MISSING when absent.

    Arrays met along the path are traversed element-wise and the results
    flattened, so ``{"a": [{"b": 1}, {"b": 2}]}`` resolves ``a.b`` to [1, 2].
    """
    current = document
    parts = path.split(".")
    for index, part in enumerate(parts):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list):
            if part.isdigit():
                position = int(part)
                if position >= len(current):
                    return _MISSING
                current = current[position]
                continue
            rest = ".".join(parts[index:])
            values = []
            for item in current:
                value = get_path(item, rest)
                if value is _MISSING:
                    continue
                values.extend(value if isinstance(value, list) else [value])
            return values if values else _MISSING
        else:
            return _MISSING
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


def set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def unset_path(document: Dict[str, Any], path: str) -> bool:
    parts = path.split(".")
    current: Any = document
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    if isinstance(current, dict) and parts[-1] in current:
        del current[parts[-1]]
        return True
    return False


# =============================================================================
# Filters
# =============================================================================


def _compare(op: str, actual: Any, expected: Any) -> bool:
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        return actual <= expected
    except TypeError:
        return False


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return expected is None
    if actual == expected:
        return True
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return False


def _candidates(actual: Any) -> List[Any]:
    if actual is _MISSING:
        return []
    if isinstance(actual, list):
        return [actual, *actual]
    return [actual]


def _match_operators(actual: Any, condition: Mapping[str, Any]) -> bool:
    for op, expected in condition.items():
        if op == "$eq":
            ok = _equals(actual, expected)
        elif op == "$ne":
            ok = not _equals(actual, expected)
        elif op == "$in":
            ok = any(_equals(actual, item) for item in expected)
        elif op == "$nin":
            ok = not any(_equals(actual, item) for item in expected)
        elif op == "$exists":
            ok = (actual is not _MISSING) == bool(expected)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            ok = any(_compare(op, value, expected) for value in _candidates(actual))
        elif op == "$size":
            ok = isinstance(actual, list) and len(actual) == expected
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
            ok = any(
                isinstance(value, str) and re.search(expected, value, flags)
                for value in _candidates(actual)
            )
        elif op == "$options":
            ok = True
        elif op == "$not":
            ok = not _match_operators(actual, expected)
        elif op == "$elemMatch":
            ok = isinstance(actual, list) and any(
                matches(item, expected) if isinstance(item, Mapping) else _match_operators(item, expected)
                for item in actual
            )
        else:
            raise StoreError(f"Unsupported query operator: {op}")
        if not ok:
            return False
    return True


def _is_operator_doc(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(
        str(key).startswith("$") for key in value
    )


def matches(document: Mapping[str, Any], filter: Optional[Mapping[str, Any]]) -> bool:
    """Return True when document satisfies the query filter."""
    if not filter:
        return True
    for key, condition in filter.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        elif key == "$nor":
            if any(matches(document, sub) for sub in condition):
                return False
        elif key.startswith("$"):
            raise StoreError(f"Unsupported top-level query operator: {key}")
        else:
            actual = get_path(document, key)
            if _is_operator_doc(condition):
                if not _match_operators(actual, condition):
                    return False
            elif not _equals(actual, condition):
                return False
    return True


def equality_fields(filter: Mapping[str, Any]) -> Dict[str, Any]:
    """Fields an upsert copies from its filter into the new document."""
    seeded: Dict[str, Any] = {}
    for key, condition in filter.items():
        if key.startswith("$"):
            continue
        if _is_operator_doc(condition):
            if "$eq" in condition:
                seeded[key] = condition["$eq"]
            continue
        seeded[key] = condition
    return seeded


# =============================================================================
# Updates
# =============================================================================


def _pull_matches(item: Any, condition: Any) -> bool:
    if isinstance(condition, Mapping) and not _is_operator_doc(condition):
        return isinstance(item, Mapping) and matches(item, condition)
    if _is_operator_doc(condition):
        return _match_operators(item, condition)
    return item == condition


def apply_update(
    document: Dict[str, Any], update: Mapping[str, Any], *, inserting: bool = False
) -> bool:
    """Apply update operators in place and return whether anything changed.

    Raises:
        StoreError: For an unsupported operator or a type mismatch, e.g.
            $push onto a field that is not an array
    """
    if not update:
        raise StoreError("Update document must not be empty")
    before = copy.deepcopy(document)

    for op, fields in update.items():
        if not op.startswith("$"):
            raise StoreError(f"Update document requires atomic operators, got '{op}'")
        if op == "$setOnInsert":
            if inserting:
                for path, value in fields.items():
                    set_path(document, path, copy.deepcopy(value))
        elif op == "$set":
            for path, value in fields.items():
                set_path(document, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                unset_path(document, path)
        elif op == "$inc":
            for path, amount in fields.items():
                current = get_path(document, path)
                current = 0 if current is _MISSING else current
                if not isinstance(current, (int, float)):
                    raise StoreError(f"Cannot apply $inc to non-numeric field '{path}'")
                set_path(document, path, current + amount)
        elif op in ("$push", "$addToSet"):
            for path, value in fields.items():
                current = get_path(document, path)
                if current is _MISSING:
                    current = []
                    set_path(document, path, current)
                elif not isinstance(current, list):
                    raise StoreError(f"The field '{path}' must be an array for {op}")
                items = value["$each"] if isinstance(value, Mapping) and "$each" in value else [value]
                for item in items:
                    if op == "$addToSet" and item in current:
                        continue
                    current.append(copy.deepcopy(item))
        elif op == "$pull":
            for path, condition in fields.items():
                current = get_path(document, path)
                if current is _MISSING:
                    continue
                if not isinstance(current, list):
                    raise StoreError(f"Cannot apply $pull to non-array field '{path}'")
                set_path(document, path, [i for i in current if not _pull_matches(i, condition)])
        elif op == "$currentDate":
            for path in fields:
                set_path(document, path, datetime.now(timezone.utc))
        else:
            raise StoreError(f"Unsupported update operator: {op}")

    return document != before


# =============================================================================
# Projection
# =============================================================================


def project(document: Mapping[str, Any], projection: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Apply an inclusion or exclusion projection, returning a new document."""
    result = copy.deepcopy(dict(document))
    if not projection:
        return result

    include_id = bool(projection.get("_id", 1))
    fields = {k: v for k, v in projection.items() if k != "_id"}
    inclusive = [k for k, v in fields.items() if v in (1, True)]
    exclusive = [k for k, v in fields.items() if v in (0, False)]
    if inclusive and exclusive:
        raise StoreError("Projection cannot mix inclusion and exclusion")

    if inclusive:
        projected: Dict[str, Any] = {}
        if include_id and "_id" in result:
            projected["_id"] = result["_id"]
        for path in inclusive:
            value = get_path(result, path)
            if value is not _MISSING:
                set_path(projected, path, value)
        return projected

    for path in exclusive:
        unset_path(result, path)
    if not include_id:
        result.pop("_id", None)
    return result


def sort_documents(
    documents: Iterable[Dict[str, Any]], spec: Mapping[str, int]
) -> List[Dict[str, Any]]:
    """Stable multi-key sort; missing values order first as in MongoDB."""

    def key_for(path: str):
        def key(document: Dict[str, Any]) -> Tuple[int, str, Any]:
            value = get_path(document, path)
            if value is _MISSING or value is None:
                return (0, "", "")
            return (1, type(value).__name__, value)

        return key

    ordered = list(documents)
    for path, direction in reversed(list(spec.items())):
        ordered.sort(key=key_for(path), reverse=direction < 0)
    return ordered
