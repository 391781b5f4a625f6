"""
Document Schemas for Hypernote.

Pydantic models for the compiled document the engine consumes. The engine
never parses source syntax; these models only validate and normalize the
compiler's output.

Compiled query shapes accepted (both validate to the same QuerySpec)::

    {"filter": {"kinds": [1], "authors": ["user.pubkey"]}, "pipe": [...]}
    {"kinds": [1], "authors": ["user.pubkey"], "pipe": [...]}

A ``tags`` mapping in either shape (``{"p": ["<hex>"]}``) is normalized to
relay tag filters (``{"#p": ["<hex>"]}``).
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hypernote.pipes.operations import PipeOp, expand_shorthand
from hypernote.resolution.context import action_key, query_key
from hypernote.resolution.resolver import extract_references

# Keys of a compiled query that are not filter fields
_QUERY_KEYS = frozenset({"pipe", "triggers", "filter"})

# Filter fields that hold lists of values
LIST_FIELDS = frozenset({"kinds", "authors", "ids"})


def _normalize_filter(raw: dict[str, Any]) -> dict[str, Any]:
    filter_: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "tags" and isinstance(value, dict):
            for name, values in value.items():
                tag_key = name if name.startswith("#") else f"#{name}"
                filter_[tag_key] = values if isinstance(values, list) else [values]
        elif (key in LIST_FIELDS or key.startswith("#")) and not isinstance(value, list):
            filter_[key] = [value]
        else:
            filter_[key] = value
    return filter_


class QuerySpec(BaseModel):
    """
    A named query: relay filter, optional pipe, optional triggered action.

    Immutable once compiled.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    filter: dict[str, Any] = Field(default_factory=dict, description="Relay filter with references")
    pipe: list[PipeOp] = Field(default_factory=list, description="Operations applied to results")
    triggers: str | None = Field(None, description="Action fired when the result changes")

    @model_validator(mode="before")
    @classmethod
    def _accept_flat_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "filter" in data:
            base = dict(data["filter"] or {})
        else:
            base = {key: value for key, value in data.items() if key not in _QUERY_KEYS}
        return {
            "filter": _normalize_filter(base),
            "pipe": expand_shorthand(data.get("pipe") or []),
            "triggers": data.get("triggers"),
        }

    @field_validator("triggers")
    @classmethod
    def _normalize_trigger(cls, value: str | None) -> str | None:
        return action_key(value) if value else None

    @property
    def references(self) -> list[str]:
        """``$query`` and ``@action`` roots referenced by the filter."""
        return extract_references(self.filter)

    @property
    def query_dependencies(self) -> list[str]:
        return [name for name in self.references if name.startswith("$")]

    @property
    def action_dependencies(self) -> list[str]:
        return [name for name in self.references if name.startswith("@")]


class ActionSpec(BaseModel):
    """
    A write action template.

    Resolved against the context on every invocation, never at load time.
    ``content`` is a string template; ``json`` is a structured template
    serialized after resolution. At most one of them may be given.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    kind: int = Field(..., ge=0, description="Record kind to publish")
    content: str | None = Field(None, description="String content template")
    json_: Any = Field(None, alias="json", description="Structured content template")
    tags: list[list[Any]] = Field(default_factory=list, description="Tag templates")
    d: str | None = Field(None, alias="dTag", description="Replaceable record identifier")
    triggers: str | None = Field(None, description="Action chained after a successful publish")

    @model_validator(mode="after")
    def _single_content_source(self) -> "ActionSpec":
        if self.content is not None and self.json_ is not None:
            raise ValueError("An action takes either content or json, not both")
        return self

    @field_validator("triggers")
    @classmethod
    def _normalize_trigger(cls, value: str | None) -> str | None:
        return action_key(value) if value else None


class Document(BaseModel):
    """
    A compiled document: named queries, named actions and imports.

    Query names are normalized to ``$name`` and action names to ``@name``.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    version: str | None = None
    component_kind: Literal[0, 1] | None = Field(
        None, description="0: profile component, 1: record component, None: not a component"
    )
    queries: dict[str, QuerySpec] = Field(default_factory=dict)
    events: dict[str, ActionSpec] = Field(default_factory=dict)
    imports: dict[str, Any] = Field(default_factory=dict)

    @field_validator("queries", mode="before")
    @classmethod
    def _query_names(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {query_key(name): spec for name, spec in value.items()}
        return value

    @field_validator("events", mode="before")
    @classmethod
    def _action_names(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {action_key(name): spec for name, spec in value.items()}
        return value

    def get_query(self, name: str) -> QuerySpec | None:
        return self.queries.get(query_key(name))

    def get_action(self, name: str) -> ActionSpec | None:
        return self.events.get(action_key(name))

    def with_query(self, name: str, spec: QuerySpec | dict[str, Any]) -> "Document":
        """Copy of this document with one query added or replaced."""
        if isinstance(spec, dict):
            spec = QuerySpec.model_validate(spec)
        return self.model_copy(update={"queries": {**self.queries, query_key(name): spec}})
