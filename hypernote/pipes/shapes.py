"""
Shape helpers for the pipe engine.

``construct`` has to tell two situations apart:

1. a query result: a list of records, each of which should become one
   constructed object, and
2. a value already narrowed down (a single record, a group produced by
   ``groupBy`` inside ``map``, a plain dict) that should become exactly one
   constructed object.

The rule lives in :func:`is_record_collection` so it can be tested on its
own rather than being inferred from ``construct``'s output.
"""

from __future__ import annotations

import re
from typing import Any

RECORD_IDENTITY_FIELD = "id"

_INDEX_SEGMENT = re.compile(r"^(?P<name>[^\[\]]*)\[(?P<index>\d+)\]$")


def is_record(value: Any) -> bool:
    """A dict carrying an identity field."""
    return isinstance(value, dict) and RECORD_IDENTITY_FIELD in value


def is_record_collection(value: Any) -> bool:
    """
    True for a non-empty list whose every element is a record.

    Empty lists, lists of lists (``groupBy`` output) and lists mixing
    records with other values are not record collections.
    """
    return isinstance(value, list) and bool(value) and all(is_record(item) for item in value)


def get_path(value: Any, path: str) -> Any:
    """
    Read a dotted path (``content.name``, ``tags[0]``, ``0``) from nested
    dicts and lists. Missing segments yield None.
    """
    current = value
    for segment in path.split("."):
        if current is None:
            return None
        match = _INDEX_SEGMENT.match(segment)
        if match:
            name = match.group("name")
            if name:
                current = current.get(name) if isinstance(current, dict) else None
            current = _index(current, int(match.group("index")))
        elif isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            current = _index(current, int(segment))
        else:
            return None
    return current


def _index(value: Any, index: int) -> Any:
    if isinstance(value, list) and 0 <= index < len(value):
        return value[index]
    return None


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_number(value: Any) -> int | float | None:
    """Numeric coercion for math operations. None when not numeric."""
    if is_number(value):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            try:
                return float(text)
            except ValueError:
                return None
    return None


def is_empty(value: Any) -> bool:
    """None, empty string and empty containers count as empty; so does 0."""
    if value is None:
        return True
    if isinstance(value, (str, list, dict, tuple, set)):
        return len(value) == 0
    if is_number(value):
        return value == 0
    return False
