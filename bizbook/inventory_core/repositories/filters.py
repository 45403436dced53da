"""
Filter and query-option vocabulary shared by every backend.

A filter is a nested map using a small operator set:

    {"category": "lumber"}                          equality
    {"quantity": {"$gt": 0, "$lte": 100}}           range
    {"status": {"$in": ["received", "partially_received"]}}
    {"derivedFrom.item": {"$exists": True}}         dotted paths reach nested fields

Backends translate parsed conditions into their native query form where
they can (SQLite json_extract, DynamoDB key conditions and filter
expressions) and fall back to matches() where they cannot.

Invariants:
    - Unknown operators are rejected, never ignored
    - {"field": None} and {"field": {"$eq": None}} match missing fields
    - Comparisons across incompatible types do not match (never raise)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from ..errors import ValidationError

OPERATORS = ("$eq", "$gt", "$gte", "$lt", "$lte", "$in", "$exists")

_MISSING = object()


@dataclass(frozen=True)
class Condition:
    """One parsed filter condition."""

    path: str
    op: str
    value: Any


@dataclass(frozen=True)
class QueryOptions:
    """Normalized find options.

    Attributes:
        limit: Maximum records returned (None for all)
        skip: Records skipped after sorting
        sort: (path, descending) pairs, most significant first
    """

    limit: Optional[int] = None
    skip: int = 0
    sort: tuple[tuple[str, bool], ...] = field(default_factory=tuple)


def parse_filter(filter: Optional[dict[str, Any]]) -> list[Condition]:
    """Parse a filter map into conditions.

    Raises:
        ValidationError: On an unknown operator or a malformed operand
    """
    conditions: list[Condition] = []
    for path, spec in (filter or {}).items():
        if isinstance(spec, dict) and spec and all(str(k).startswith("$") for k in spec):
            for op, value in spec.items():
                conditions.append(_condition(path, op, value))
        else:
            conditions.append(Condition(path, "$eq", spec))
    return conditions


def _condition(path: str, op: str, value: Any) -> Condition:
    if op not in OPERATORS:
        raise ValidationError(
            f"Unsupported filter operator '{op}' on '{path}'",
            errors=[f"operator must be one of {OPERATORS}"],
        )
    if op == "$in" and not isinstance(value, (list, tuple)):
        raise ValidationError(f"$in on '{path}' needs a list", errors=[path])
    if op == "$exists" and not isinstance(value, bool):
        raise ValidationError(f"$exists on '{path}' needs a boolean", errors=[path])
    return Condition(path, op, list(value) if op == "$in" else value)


def get_path(record: dict[str, Any], path: str) -> Any:
    """Value at a dotted path, or the module sentinel if absent."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


def _compare(left: Any, op: str, right: Any) -> bool:
    try:
        if op == "$gt":
            return left > right
        if op == "$gte":
            return left >= right
        if op == "$lt":
            return left < right
        if op == "$lte":
            return left <= right
    except TypeError:
        return False
    raise ValueError(op)


def condition_matches(record: dict[str, Any], condition: Condition) -> bool:
    """Evaluate one condition against a record."""
    value = get_path(record, condition.path)
    op = condition.op
    if op == "$exists":
        present = not is_missing(value) and value is not None
        return present == condition.value
    if op == "$eq":
        if condition.value is None:
            return is_missing(value) or value is None
        return not is_missing(value) and value == condition.value
    if is_missing(value) or value is None:
        return False
    if op == "$in":
        return value in condition.value
    if isinstance(value, bool) != isinstance(condition.value, bool):
        return False
    return _compare(value, op, condition.value)


def matches(record: dict[str, Any], conditions: Iterable[Condition]) -> bool:
    """Whether a record satisfies every condition."""
    return all(condition_matches(record, c) for c in conditions)


def parse_options(options: Optional[dict[str, Any]]) -> QueryOptions:
    """Normalize {limit, skip, sort}.

    sort accepts "field", "-field", a list of those, or a map of
    field -> 1 / -1 / "asc" / "desc".
    """
    if not options:
        return QueryOptions()
    limit = options.get("limit")
    skip = options.get("skip") or 0
    if limit is not None and (not isinstance(limit, int) or limit < 0):
        raise ValidationError("limit must be a non-negative integer", errors=["limit"])
    if not isinstance(skip, int) or skip < 0:
        raise ValidationError("skip must be a non-negative integer", errors=["skip"])

    raw = options.get("sort")
    sort: list[tuple[str, bool]] = []
    if isinstance(raw, str):
        raw = [raw]
    if isinstance(raw, dict):
        for path, direction in raw.items():
            sort.append((path, direction in (-1, "-1", "desc", "descending")))
    elif isinstance(raw, (list, tuple)):
        for entry in raw:
            entry = str(entry)
            sort.append((entry[1:], True) if entry.startswith("-") else (entry, False))
    return QueryOptions(limit=limit, skip=skip, sort=tuple(sort))


def _sort_key(value: Any) -> tuple:
    if is_missing(value) or value is None:
        return (0, 0)
    if isinstance(value, (bool, int, float)):
        return (1, float(value))
    if isinstance(value, str):
        return (2, value)
    return (3, json.dumps(value, sort_keys=True, default=str))


def sort_records(records: list[dict[str, Any]], sort: Iterable[tuple[str, bool]]) -> list[dict]:
    """Stable multi-key sort (least significant key applied first)."""
    result = list(records)
    for path, descending in reversed(tuple(sort)):
        result.sort(key=lambda r, p=path: _sort_key(get_path(r, p)), reverse=descending)
    return result


def apply_options(records: list[dict[str, Any]], options: QueryOptions) -> list[dict[str, Any]]:
    """Sort, skip and limit in Python."""
    result = sort_records(records, options.sort) if options.sort else list(records)
    if options.skip:
        result = result[options.skip:]
    if options.limit is not None:
        result = result[: options.limit]
    return result


def matches_text(record: dict[str, Any], text: str, fields: Iterable[str]) -> bool:
    """Case-insensitive substring match over string (or list-of-string) fields."""
    needle = text.strip().lower()
    if not needle:
        return True
    for name in fields:
        value = get_path(record, name)
        if isinstance(value, str) and needle in value.lower():
            return True
        if isinstance(value, list) and any(
            isinstance(v, str) and needle in v.lower() for v in value
        ):
            return True
    return False
