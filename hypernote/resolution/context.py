"""
Resolution Context for Hypernote.

The context holds the per-scope state that symbolic references resolve
against: query results, published action ids, form input, loop variables,
the viewing user and the component target.

One context belongs to one document scope. Nested component scopes never
share it by reference; they get a derived copy with their own target.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from .clock import Clock, SystemClock


def query_key(name: str) -> str:
    """Normalize a query name to its ``$name`` form."""
    return name if name.startswith("$") else f"${name}"


def action_key(name: str) -> str:
    """Normalize an action name to its ``@name`` form."""
    return name if name.startswith("@") else f"@{name}"


@dataclass
class ResolutionContext:
    """
    Mutable state that references resolve against.

    Keys:
    - query_results: ``$name`` -> piped result
    - action_results: ``@name`` -> id of the last record the action published
    - loop_variables: ``$item`` -> value (shadow query results)
    """

    query_results: dict[str, Any] = field(default_factory=dict)
    action_results: dict[str, str] = field(default_factory=dict)
    form_data: dict[str, Any] = field(default_factory=dict)
    loop_variables: dict[str, Any] = field(default_factory=dict)
    user_pubkey: str | None = None
    target: dict[str, Any] | None = None
    clock: Clock = field(default_factory=SystemClock)
    scope_id: str = field(default_factory=lambda: uuid4().hex[:12])

    @property
    def time_now(self) -> int:
        """Current time in milliseconds."""
        return self.clock.now_ms()

    def set_query_result(self, name: str, value: Any) -> None:
        self.query_results[query_key(name)] = value

    def get_query_result(self, name: str, default: Any = None) -> Any:
        return self.query_results.get(query_key(name), default)

    def set_action_result(self, name: str, record_id: str) -> None:
        self.action_results[action_key(name)] = record_id

    def get_action_result(self, name: str) -> str | None:
        return self.action_results.get(action_key(name))

    def update(
        self,
        *,
        query_results: dict[str, Any] | None = None,
        action_results: dict[str, str] | None = None,
        form_data: dict[str, Any] | None = None,
        loop_variables: dict[str, Any] | None = None,
    ) -> None:
        """Merge new values into the context."""
        for name, value in (query_results or {}).items():
            self.set_query_result(name, value)
        for name, record_id in (action_results or {}).items():
            self.set_action_result(name, record_id)
        if form_data:
            self.form_data.update(form_data)
        if loop_variables:
            self.loop_variables.update(
                {query_key(name): value for name, value in loop_variables.items()}
            )

    def copy(self) -> "ResolutionContext":
        """
        Create an isolated copy.

        Shares the clock but copies every mutable map so updates on one
        side never show up on the other.
        """
        return ResolutionContext(
            query_results=copy.copy(self.query_results),
            action_results=copy.copy(self.action_results),
            form_data=copy.copy(self.form_data),
            loop_variables=copy.copy(self.loop_variables),
            user_pubkey=self.user_pubkey,
            target=copy.deepcopy(self.target),
            clock=self.clock,
            scope_id=self.scope_id,
        )

    def derive(self, target: dict[str, Any] | None = None) -> "ResolutionContext":
        """
        Context for a nested component scope.

        Gets its own target, empty loop variables and a fresh scope id.
        """
        derived = self.copy()
        derived.target = copy.deepcopy(target)
        derived.loop_variables = {}
        derived.scope_id = uuid4().hex[:12]
        return derived

    def with_loop_variables(self, variables: dict[str, Any]) -> "ResolutionContext":
        """Copy of this context with extra loop variables in scope."""
        scoped = self.copy()
        scoped.update(loop_variables=variables)
        return scoped

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging."""
        return {
            "scope_id": self.scope_id,
            "user_pubkey": self.user_pubkey,
            "target": self.target,
            "queries": sorted(self.query_results),
            "actions": dict(self.action_results),
            "form_fields": sorted(self.form_data),
            "loop_variables": sorted(self.loop_variables),
        }
