"""
Pipe operation schema.

Every operation is a frozen pydantic model tagged by its ``op`` field. The
full set is closed: ``PipeOp`` is a discriminated union, so an unknown
operation is a validation error at document load time, never at runtime.

Serialized form (as emitted by the document compiler)::

    [
        {"op": "first"},
        {"op": "get", "field": "tags"},
        {"op": "pluckIndex", "index": 1}
    ]

A bare string is accepted as shorthand for a parameterless operation
(``"first"`` == ``{"op": "first"}``).
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class _Op(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


# =============================================================================
# Simple operations (no parameters)
# =============================================================================

SimpleOpName = Literal[
    "first",
    "last",
    "json",
    "reverse",
    "unique",
    "flatten",
    "compact",
    "keys",
    "values",
    "sum",
    "min",
    "max",
    "average",
    "length",
    "count",
    "trim",
    "lowercase",
    "uppercase",
]


class SimpleOp(_Op):
    op: SimpleOpName


# =============================================================================
# Field operations
# =============================================================================


class GetOp(_Op):
    op: Literal["get"]
    field: str


class PluckOp(_Op):
    op: Literal["pluck"]
    field: str


class GroupByOp(_Op):
    op: Literal["groupBy"]
    field: str


# =============================================================================
# Value operations
# =============================================================================


class DefaultOp(_Op):
    op: Literal["default"]
    value: Any = None


class CountOp(_Op):
    op: Literal["limit", "take", "drop"]
    count: int = Field(..., ge=0)


class ArithmeticOp(_Op):
    op: Literal["add", "multiply"]
    value: int | float


# =============================================================================
# Filtering and ordering
# =============================================================================


class FilterOp(_Op):
    """
    Keep list items whose ``field`` satisfies the first comparison given.

    Comparisons are checked in the order eq, neq, gt, lt, gte, lte, contains.
    """

    op: Literal["filter"]
    field: str
    eq: Any = None
    neq: Any = None
    gt: Any = None
    lt: Any = None
    gte: Any = None
    lte: Any = None
    contains: str | None = None


class WhereOp(_Op):
    op: Literal["where"]
    expression: str


class SortOp(_Op):
    op: Literal["sort"]
    by: str | None = None
    order: Literal["asc", "desc"] = "asc"


# =============================================================================
# Tag operations
# =============================================================================


class FilterTagOp(_Op):
    op: Literal["filterTag"]
    tag: str
    value: str | None = None


class PluckTagOp(_Op):
    op: Literal["pluckTag"]
    tag: str
    index: int = Field(0, ge=0)


class WhereIndexOp(_Op):
    op: Literal["whereIndex"]
    index: int = Field(..., ge=0)
    eq: Any = None


class PluckIndexOp(_Op):
    op: Literal["pluckIndex"]
    index: int = Field(..., ge=0)


# =============================================================================
# String operations
# =============================================================================


class SeparatorOp(_Op):
    op: Literal["split", "join"]
    separator: str


class ReplaceOp(_Op):
    op: Literal["replace"]
    from_: str = Field(..., alias="from")
    to: str


# =============================================================================
# Object operations
# =============================================================================


class MergeOp(_Op):
    op: Literal["merge"]
    with_: dict[str, Any] = Field(..., alias="with")


class DefaultsOp(_Op):
    op: Literal["defaults"]
    value: dict[str, Any]


class FieldsOp(_Op):
    op: Literal["pick", "omit"]
    fields: list[str]


# =============================================================================
# Recursive operations
# =============================================================================


class MapOp(_Op):
    op: Literal["map"]
    pipe: list[PipeOp]

    @field_validator("pipe", mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        return expand_shorthand(value)


class ConstructOp(_Op):
    op: Literal["construct"]
    fields: dict[str, list[PipeOp]]

    @field_validator("fields", mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {name: expand_shorthand(pipe) for name, pipe in value.items()}
        return value


PipeOp = Annotated[
    Union[
        SimpleOp,
        GetOp,
        PluckOp,
        GroupByOp,
        DefaultOp,
        CountOp,
        ArithmeticOp,
        FilterOp,
        WhereOp,
        SortOp,
        FilterTagOp,
        PluckTagOp,
        WhereIndexOp,
        PluckIndexOp,
        SeparatorOp,
        ReplaceOp,
        MergeOp,
        DefaultsOp,
        FieldsOp,
        MapOp,
        ConstructOp,
    ],
    Field(discriminator="op"),
]

MapOp.model_rebuild()
ConstructOp.model_rebuild()

_PIPE_ADAPTER: TypeAdapter[list[PipeOp]] = TypeAdapter(list[PipeOp])


def expand_shorthand(raw: Any) -> Any:
    """Turn ``"first"`` entries into ``{"op": "first"}``."""
    if isinstance(raw, list):
        return [{"op": item} if isinstance(item, str) else item for item in raw]
    return raw


def parse_pipe(raw: Any) -> list[PipeOp]:
    """
    Validate a serialized pipe into operation models.

    Already-parsed operations are passed through unchanged.

    Raises:
        pydantic.ValidationError: unknown operation or bad parameters
    """
    if raw is None:
        return []
    if isinstance(raw, list) and all(isinstance(item, _Op) for item in raw):
        return list(raw)
    return _PIPE_ADAPTER.validate_python(expand_shorthand(raw))


def dump_pipe(ops: list[PipeOp]) -> list[dict[str, Any]]:
    """Serialize operations back to their wire form."""
    return [op.model_dump(by_alias=True, exclude_unset=True) for op in ops]
