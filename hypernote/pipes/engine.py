"""
Pipe engine.

Applies an ordered list of operations to a value, strictly left to right.
Every operation is a pure function ``(value, op) -> value`` registered under
its ``op`` tag; no operation performs I/O or mutates its input.

Shape mismatches are not errors: an operation given a value it does not
understand returns the value unchanged. The few deliberate coercions are
listed in the handler docstrings (``length`` of a scalar is 0, ``first`` of
an empty list is None, and so on).

Usage:
    from hypernote.pipes import apply_pipe

    contacts = apply_pipe(events, [
        {"op": "first"},
        {"op": "get", "field": "tags"},
        {"op": "pluckIndex", "index": 1},
    ])
"""

from __future__ import annotations

import json
import logging
import operator
import re
from collections.abc import Callable
from typing import Any

from hypernote.filters import canonical_json

from .operations import (
    ArithmeticOp,
    ConstructOp,
    CountOp,
    DefaultOp,
    DefaultsOp,
    FieldsOp,
    FilterOp,
    FilterTagOp,
    GetOp,
    GroupByOp,
    MapOp,
    MergeOp,
    PipeOp,
    PluckIndexOp,
    PluckOp,
    PluckTagOp,
    ReplaceOp,
    SeparatorOp,
    SimpleOp,
    SortOp,
    WhereIndexOp,
    WhereOp,
    parse_pipe,
)
from .shapes import get_path, is_number, is_record_collection, to_number

logger = logging.getLogger(__name__)

PipeHandler = Callable[[Any, Any], Any]

_REGISTRY: dict[str, PipeHandler] = {}


def operation(*names: str) -> Callable[[PipeHandler], PipeHandler]:
    """Register a handler for one or more op tags."""

    def decorator(handler: PipeHandler) -> PipeHandler:
        for name in names:
            if name in _REGISTRY:
                raise ValueError(f"Pipe operation already registered: {name}")
            _REGISTRY[name] = handler
        return handler

    return decorator


def registered_operations() -> frozenset[str]:
    return frozenset(_REGISTRY)


def apply_pipe(value: Any, ops: Any) -> Any:
    """
    Run ``value`` through ``ops``.

    Args:
        value: Any JSON-like value (usually a list of records)
        ops: Parsed operations or their serialized form

    Returns:
        The transformed value. An empty or missing pipe returns ``value``.
    """
    pipe: list[PipeOp] = parse_pipe(ops)
    current = value
    for op in pipe:
        current = _REGISTRY[op.op](current, op)
    return current


# =============================================================================
# List operations
# =============================================================================


@operation("first")
def _first(value: Any, op: SimpleOp) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


@operation("last")
def _last(value: Any, op: SimpleOp) -> Any:
    if isinstance(value, list):
        return value[-1] if value else None
    return value


@operation("reverse")
def _reverse(value: Any, op: SimpleOp) -> Any:
    return list(reversed(value)) if isinstance(value, list) else value


@operation("unique")
def _unique(value: Any, op: SimpleOp) -> Any:
    """Order-preserving de-duplication; unhashable items compare as canonical JSON."""
    if not isinstance(value, list):
        return value
    seen: set[Any] = set()
    result = []
    for item in value:
        try:
            marker = ("h", type(item).__name__, item)
            hash(marker)
        except TypeError:
            marker = ("j", canonical_json(item))
        if marker in seen:
            continue
        seen.add(marker)
        result.append(item)
    return result


@operation("flatten")
def _flatten(value: Any, op: SimpleOp) -> Any:
    """Flatten one level."""
    if not isinstance(value, list):
        return value
    result = []
    for item in value:
        if isinstance(item, list):
            result.extend(item)
        else:
            result.append(item)
    return result


@operation("compact")
def _compact(value: Any, op: SimpleOp) -> Any:
    if not isinstance(value, list):
        return value
    return [item for item in value if item is not None]


@operation("length", "count")
def _length(value: Any, op: SimpleOp) -> int:
    """Length of a list, string or object; 0 for anything else."""
    if isinstance(value, (list, str, dict)):
        return len(value)
    return 0


@operation("limit", "take")
def _take(value: Any, op: CountOp) -> Any:
    return value[: op.count] if isinstance(value, list) else value


@operation("drop")
def _drop(value: Any, op: CountOp) -> Any:
    return value[op.count :] if isinstance(value, list) else value


# =============================================================================
# Field operations
# =============================================================================


@operation("get")
def _get(value: Any, op: GetOp) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return get_path(value, op.field)
    return value


@operation("pluck")
def _pluck(value: Any, op: PluckOp) -> Any:
    if isinstance(value, list):
        return [get_path(item, op.field) for item in value]
    if isinstance(value, dict):
        return get_path(value, op.field)
    return value


@operation("groupBy")
def _group_by(value: Any, op: GroupByOp) -> Any:
    """Group list items by a field, keeping groups in first-seen order."""
    if not isinstance(value, list):
        return value
    groups: dict[str, list[Any]] = {}
    for item in value:
        key = get_path(item, op.field)
        group_key = canonical_json(key) if key not in (None, "") else "undefined"
        groups.setdefault(group_key, []).append(item)
    return list(groups.values())


@operation("keys")
def _keys(value: Any, op: SimpleOp) -> Any:
    return list(value.keys()) if isinstance(value, dict) else value


@operation("values")
def _values(value: Any, op: SimpleOp) -> Any:
    return list(value.values()) if isinstance(value, dict) else value


# =============================================================================
# Value operations
# =============================================================================


@operation("json")
def _json(value: Any, op: SimpleOp) -> Any:
    """Parse a JSON string. Invalid JSON becomes None."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        logger.debug(f"[pipes] json op could not parse {value[:60]!r}")
        return None


@operation("default")
def _default(value: Any, op: DefaultOp) -> Any:
    return op.value if value is None else value


@operation("defaults")
def _defaults(value: Any, op: DefaultsOp) -> Any:
    if value is None:
        return dict(op.value)
    if isinstance(value, dict):
        return {**op.value, **value}
    return value


@operation("add", "multiply")
def _arithmetic(value: Any, op: ArithmeticOp) -> Any:
    """None counts as 0; numeric strings are coerced; other values pass through."""
    number = 0 if value is None else to_number(value)
    if number is None:
        return value
    if op.op == "add":
        return number + op.value
    return number * op.value


def _numbers(values: list[Any]) -> list[int | float]:
    return [n for n in (to_number(item) for item in values) if n is not None]


@operation("sum")
def _sum(value: Any, op: SimpleOp) -> Any:
    """Sum of the numeric items; an empty list sums to 0."""
    if not isinstance(value, list):
        return value
    return sum(_numbers(value))


@operation("average")
def _average(value: Any, op: SimpleOp) -> Any:
    if not isinstance(value, list):
        return value
    numbers = _numbers(value)
    if not numbers:
        return 0
    return sum(numbers) / len(numbers)


@operation("min", "max")
def _extreme(value: Any, op: SimpleOp) -> Any:
    """Smallest/largest numeric item; None for an empty list."""
    if not isinstance(value, list):
        return value
    numbers = _numbers(value)
    if not numbers:
        return None
    return min(numbers) if op.op == "min" else max(numbers)


# =============================================================================
# Filtering and ordering
# =============================================================================

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "neq": operator.ne,
    "gt": operator.gt,
    "lt": operator.lt,
    "gte": operator.ge,
    "lte": operator.le,
}


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _compare(left: Any, name: str, right: Any) -> bool:
    try:
        return bool(_COMPARATORS[name](left, right))
    except TypeError:
        return False


@operation("filter")
def _filter(value: Any, op: FilterOp) -> Any:
    """
    Keep items matching the first comparison present on the op.

    An op with no comparison keeps everything.
    """
    if not isinstance(value, list):
        return value

    given = op.model_fields_set
    for name in ("eq", "neq", "gt", "lt", "gte", "lte"):
        if name in given:
            expected = getattr(op, name)
            return [
                item for item in value if _compare(get_path(item, op.field), name, expected)
            ]
    if "contains" in given and op.contains is not None:
        return [item for item in value if op.contains in _text(get_path(item, op.field))]
    return list(value)


_WHERE_EXPRESSION = re.compile(
    r"^\s*(?P<field>[\w.\[\]$-]+)\s*(?P<op>===|!==|==|!=|>=|<=|>|<)\s*(?P<literal>.+?)\s*$"
)

_WHERE_OPERATORS = {
    "==": "eq",
    "===": "eq",
    "!=": "neq",
    "!==": "neq",
    ">": "gt",
    "<": "lt",
    ">=": "gte",
    "<=": "lte",
}


def parse_literal(text: str) -> Any:
    """Parse a literal from an expression: quoted string, number, bool or null."""
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("null", "none"):
        return None
    number = to_number(text)
    return text if number is None else number


@operation("where")
def _where(value: Any, op: WhereOp) -> Any:
    """Filter by an expression of the form ``<field> <op> <literal>``."""
    if not isinstance(value, list):
        return value
    match = _WHERE_EXPRESSION.match(op.expression)
    if not match:
        logger.warning(f"[pipes] Ignoring malformed where expression: {op.expression!r}")
        return value
    name = _WHERE_OPERATORS[match.group("op")]
    expected = parse_literal(match.group("literal"))
    field = match.group("field")
    return [item for item in value if _compare(get_path(item, field), name, expected)]


def _sort_key(item: Any) -> tuple:
    if item is None:
        return (2, "", "")
    if is_number(item) or isinstance(item, bool):
        return (0, "", item)
    if isinstance(item, str):
        return (1, "", item)
    return (1, type(item).__name__, canonical_json(item))


@operation("sort")
def _sort(value: Any, op: SortOp) -> Any:
    """
    Stable sort, ascending by default. None sorts last in either order;
    mixed types fall back to ordering by type and string form.
    """
    if not isinstance(value, list):
        return value
    keyed = [(get_path(item, op.by) if op.by else item, item) for item in value]
    present = [pair for pair in keyed if pair[0] is not None]
    absent = [item for key, item in keyed if key is None]
    descending = op.order == "desc"
    try:
        ordered = sorted(present, key=lambda pair: pair[0], reverse=descending)
    except TypeError:
        ordered = sorted(present, key=lambda pair: _sort_key(pair[0]), reverse=descending)
    return [item for _, item in ordered] + absent


# =============================================================================
# Tag operations
# =============================================================================


def _tags(record: Any) -> list[list[Any]]:
    if isinstance(record, dict) and isinstance(record.get("tags"), list):
        return [tag for tag in record["tags"] if isinstance(tag, list)]
    return []


@operation("filterTag")
def _filter_tag(value: Any, op: FilterTagOp) -> Any:
    """Keep records carrying a tag named ``tag`` (with ``value`` when given, ``*`` = any)."""
    if not isinstance(value, list):
        return value
    wildcard = op.value in (None, "", "*")

    def has_tag(record: Any) -> bool:
        return any(
            tag and tag[0] == op.tag and (wildcard or (len(tag) > 1 and tag[1] == op.value))
            for tag in _tags(record)
        )

    return [record for record in value if has_tag(record)]


@operation("pluckTag")
def _pluck_tag(value: Any, op: PluckTagOp) -> Any:
    """Value at ``index`` (after the tag name) of the first matching tag, else None."""
    for tag in _tags(value):
        if tag and tag[0] == op.tag:
            position = op.index + 1
            return tag[position] if position < len(tag) else None
    return None


@operation("whereIndex")
def _where_index(value: Any, op: WhereIndexOp) -> Any:
    if not isinstance(value, list):
        return value
    return [
        item
        for item in value
        if isinstance(item, list) and op.index < len(item) and item[op.index] == op.eq
    ]


@operation("pluckIndex")
def _pluck_index(value: Any, op: PluckIndexOp) -> Any:
    """
    A flat list (``["p", "abc"]``) yields its element at ``index``; a list
    of lists is mapped. Anything else yields None.
    """
    if not isinstance(value, list):
        return None
    if value and not isinstance(value[0], list):
        return value[op.index] if op.index < len(value) else None
    return [
        item[op.index] if isinstance(item, list) and op.index < len(item) else None
        for item in value
    ]


# =============================================================================
# String operations
# =============================================================================


@operation("trim")
def _trim(value: Any, op: SimpleOp) -> Any:
    return value.strip() if isinstance(value, str) else value


@operation("lowercase")
def _lowercase(value: Any, op: SimpleOp) -> Any:
    return value.lower() if isinstance(value, str) else value


@operation("uppercase")
def _uppercase(value: Any, op: SimpleOp) -> Any:
    return value.upper() if isinstance(value, str) else value


@operation("split")
def _split(value: Any, op: SeparatorOp) -> Any:
    if not isinstance(value, str):
        return value
    if op.separator == "":
        return list(value)
    return value.split(op.separator)


@operation("join")
def _join(value: Any, op: SeparatorOp) -> Any:
    if not isinstance(value, list):
        return value
    return op.separator.join(_text(item) for item in value)


@operation("replace")
def _replace(value: Any, op: ReplaceOp) -> Any:
    """Replace every match of the ``from`` pattern; an invalid pattern is matched literally."""
    if not isinstance(value, str):
        return value
    try:
        return re.sub(op.from_, op.to, value)
    except re.error:
        return value.replace(op.from_, op.to)


# =============================================================================
# Object operations
# =============================================================================


@operation("merge")
def _merge(value: Any, op: MergeOp) -> Any:
    return {**value, **op.with_} if isinstance(value, dict) else value


@operation("pick")
def _pick(value: Any, op: FieldsOp) -> Any:
    if not isinstance(value, dict):
        return value
    return {name: value[name] for name in op.fields if name in value}


@operation("omit")
def _omit(value: Any, op: FieldsOp) -> Any:
    if not isinstance(value, dict):
        return value
    excluded = set(op.fields)
    return {name: item for name, item in value.items() if name not in excluded}


# =============================================================================
# Recursive operations
# =============================================================================


@operation("map")
def _map(value: Any, op: MapOp) -> Any:
    if not isinstance(value, list):
        return value
    return [apply_pipe(item, op.pipe) for item in value]


def _construct_one(value: Any, op: ConstructOp) -> dict[str, Any]:
    return {name: apply_pipe(value, pipe) for name, pipe in op.fields.items()}


@operation("construct")
def _construct(value: Any, op: ConstructOp) -> Any:
    """
    Build objects from named sub-pipes.

    A record collection (see ``is_record_collection``) yields one object
    per record. Any other list or object yields a single object built from
    the whole value. Scalars pass through.
    """
    if is_record_collection(value):
        return [_construct_one(item, op) for item in value]
    if isinstance(value, (list, dict)):
        return _construct_one(value, op)
    return value
