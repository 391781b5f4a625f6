"""
Filter helpers shared by the cache, subscription and planner layers.

A filter is a plain dict in relay wire shape::

    {"kinds": [1], "authors": ["<hex>"], "#p": ["<hex>"], "since": 0, "limit": 20}

The canonical key is the internal identity of a filter: two filters that
differ only in key insertion order share one cache entry and one live
subscription.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

# Filter fields that are not selection criteria
NON_MATCHING_FIELDS = frozenset({"limit", "search"})


def canonical_json(value: Any) -> str:
    """JSON with recursively sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def canonical_filter_key(filter_: dict[str, Any]) -> str:
    """Cache / subscription key for a filter."""
    return canonical_json(filter_)


def stable_hash(value: Any) -> str:
    """Structural hash used to detect whether a derived result changed."""
    digest = hashlib.blake2b(canonical_json(value).encode("utf-8"), digest_size=8)
    return digest.hexdigest()


def tag_filters(filter_: dict[str, Any]) -> dict[str, list[Any]]:
    """Return the ``#x`` tag constraints of a filter keyed by tag name."""
    return {
        key[1:]: list(values)
        for key, values in filter_.items()
        if key.startswith("#") and isinstance(values, list)
    }


def matches_filter(event: dict[str, Any], filter_: dict[str, Any]) -> bool:
    """
    Check whether an event satisfies a filter.

    ``limit`` and ``search`` are ignored; every other field must match.
    """
    ids = filter_.get("ids")
    if ids is not None and event.get("id") not in ids:
        return False

    authors = filter_.get("authors")
    if authors is not None and event.get("pubkey") not in authors:
        return False

    kinds = filter_.get("kinds")
    if kinds is not None and event.get("kind") not in kinds:
        return False

    created_at = event.get("created_at", 0)
    since = filter_.get("since")
    if isinstance(since, (int, float)) and created_at < since:
        return False
    until = filter_.get("until")
    if isinstance(until, (int, float)) and created_at > until:
        return False

    tags = event.get("tags") or []
    for name, wanted in tag_filters(filter_).items():
        if not any(
            isinstance(tag, list) and len(tag) > 1 and tag[0] == name and tag[1] in wanted
            for tag in tags
        ):
            return False

    return True


def iter_scalars(value: Any):
    """Yield every scalar nested inside lists/dicts of a filter."""
    if isinstance(value, dict):
        for item in value.values():
            yield from iter_scalars(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_scalars(item)
    else:
        yield value


def references_value(filter_: dict[str, Any], needle: Any) -> bool:
    """True when ``needle`` appears anywhere in the filter's values."""
    return any(scalar == needle for scalar in iter_scalars(filter_))
