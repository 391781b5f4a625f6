"""
Variable Resolver.

Resolves symbolic references against a ResolutionContext:

- ``$name`` / ``$name.path``: loop variable, else query result
- ``@name``: id of the record an action last published
- ``user.pubkey``, ``target.<path>``, ``form.<field>``, ``time.now``
- ``{expr}`` templates inside strings, including ``a or b`` fallbacks
  and ``time.now`` arithmetic

A string that is exactly one template (``"{$count}"``) or one bare token
(``"$contacts"``) resolves to the raw value, which may be a list or a
number. Mixed templates (``"count is {$count}"``) substitute text.

Unresolvable references never raise. They are returned verbatim (or
replaced by the caller's ``missing`` value) and reported by
``find_unresolved`` so the executor can hold the query back as pending.

``$$name`` is an escaped literal: it is neither resolved nor reported.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from hypernote.pipes.engine import parse_literal
from hypernote.pipes.shapes import get_path

from .clock import TIME_NOW, evaluate_time_expression
from .context import ResolutionContext

logger = logging.getLogger(__name__)


class _Sentinel:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name


MISSING = _Sentinel("MISSING")
"""Returned by ``resolve_expression`` when a reference cannot be resolved."""

KEEP = _Sentinel("KEEP")
"""Default ``missing`` mode: leave unresolved references verbatim."""

TEMPLATE = re.compile(r"\{(\s*(?:\$(?!\$)|@|[A-Za-z_])[^{}]*)\}")
_FULL_TEMPLATE = re.compile(r"^\{(\s*(?:\$(?!\$)|@|[A-Za-z_])[^{}]*)\}$")
_OR = re.compile(r"\s+or\s+")
_ROOT = re.compile(r"^(?P<root>\$[\w-]+|@[\w-]+|[A-Za-z_]\w*)(?P<rest>.*)$")
_BUILTIN_ROOTS = frozenset({"user", "target", "form", "time"})
_PATH = r"(?:\.[\w-]+|\[\d+\])"
_BARE_REFERENCE = re.compile(
    rf"^(?:\$[\w-]+{_PATH}*|@[\w-]+{_PATH}*|(?:user|target|form){_PATH}+|time\.now(?:[\s\d.+\-*/()]*))$"
)


def is_reference(text: str) -> bool:
    """True when ``text`` is a bare symbolic reference (possibly with ``or``)."""
    head = _OR.split(text.strip(), maxsplit=1)[0]
    return bool(_BARE_REFERENCE.match(head))


def template_expressions(text: str) -> list[str]:
    """The ``expr`` parts of every ``{expr}`` template in ``text``."""
    return [match.strip() for match in TEMPLATE.findall(text)]


def _root_names(expression: str) -> list[str]:
    roots = []
    for part in _OR.split(expression.strip()):
        match = _ROOT.match(part.strip())
        if match and match.group("root")[0] in "$@":
            roots.append(match.group("root"))
    return roots


def extract_references(value: Any) -> list[str]:
    """
    Static scan for ``$query`` / ``@action`` roots used anywhere in ``value``.

    Returns root names in first-seen order (``$contacts.tags`` -> ``$contacts``).
    Used to build dependency edges; does not need a context.
    """
    found: dict[str, None] = {}

    def visit(item: Any) -> None:
        if isinstance(item, str):
            expressions = template_expressions(item)
            if not expressions and is_reference(item):
                expressions = [item]
            for expression in expressions:
                for root in _root_names(expression):
                    found.setdefault(root, None)
        elif isinstance(item, list):
            for child in item:
                visit(child)
        elif isinstance(item, dict):
            for child in item.values():
                visit(child)

    visit(value)
    return list(found)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


class VariableResolver:
    """
    Resolves references against one context.

    Example:
        resolver = VariableResolver(context)
        resolver.resolve({"authors": ["user.pubkey"], "since": "{time.now - 3600000}"})
    """

    def __init__(self, context: ResolutionContext):
        self.context = context

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def resolve_expression(self, expression: str) -> Any:
        """Resolve one expression; MISSING when it cannot be resolved."""
        expression = expression.strip()

        parts = _OR.split(expression)
        if len(parts) > 1:
            for part in parts:
                value = self.resolve_expression(part)
                if value is not MISSING and value != "":
                    return value
            fallback = parts[-1].strip()
            if is_reference(fallback):
                return MISSING
            return parse_literal(fallback)

        if TIME_NOW.search(expression) and expression != "time.now":
            result = evaluate_time_expression(expression, self.context.time_now)
            return MISSING if result is None else result

        match = _ROOT.match(expression)
        if not match:
            return MISSING
        root, rest = match.group("root"), match.group("rest")

        base = self._lookup_root(root)
        if base is MISSING:
            return MISSING

        path = re.sub(r"\[(\d+)\]", r".\1", rest).lstrip(".")
        value = get_path(base, path) if path else base
        return MISSING if value is None else value

    def _lookup_root(self, root: str) -> Any:
        ctx = self.context
        if root.startswith("$"):
            if root in ctx.loop_variables:
                return ctx.loop_variables[root]
            if root in ctx.query_results:
                return ctx.query_results[root]
            return MISSING
        if root.startswith("@"):
            return ctx.action_results.get(root, MISSING)
        if root not in _BUILTIN_ROOTS:
            return MISSING
        if root == "user":
            return {"pubkey": ctx.user_pubkey}
        if root == "target":
            return MISSING if ctx.target is None else ctx.target
        if root == "form":
            return ctx.form_data
        return {"now": ctx.time_now}

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    def resolve(self, value: Any, *, missing: Any = KEEP) -> Any:
        """
        Resolve every reference inside ``value``.

        Args:
            value: Any JSON-like value; containers are walked recursively
            missing: KEEP leaves unresolved references verbatim; any other
                value replaces them (action content passes ``""``)
        """
        if isinstance(value, str):
            return self._resolve_string(value, missing)
        if isinstance(value, list):
            return [self.resolve(item, missing=missing) for item in value]
        if isinstance(value, dict):
            return {key: self.resolve(item, missing=missing) for key, item in value.items()}
        return value

    def _resolve_string(self, text: str, missing: Any) -> Any:
        full = _FULL_TEMPLATE.match(text)
        if full:
            result = self.resolve_expression(full.group(1))
            if result is MISSING:
                return text if missing is KEEP else missing
            return result

        if TEMPLATE.search(text):

            def substitute(match: re.Match) -> str:
                result = self.resolve_expression(match.group(1))
                if result is MISSING:
                    return match.group(0) if missing is KEEP else _as_text(missing)
                return _as_text(result)

            return TEMPLATE.sub(substitute, text)

        if is_reference(text):
            result = self.resolve_expression(text)
            if result is MISSING:
                return text if missing is KEEP else missing
            return result

        return text

    def find_unresolved(self, value: Any) -> list[str]:
        """
        References in ``value`` that cannot be resolved yet.

        Works on the unresolved value so that resolved data which happens to
        start with ``$`` or ``@`` is never mistaken for a reference.
        """
        unresolved: dict[str, None] = {}

        def visit(item: Any) -> None:
            if isinstance(item, str):
                expressions = template_expressions(item)
                if expressions:
                    for expression in expressions:
                        if self.resolve_expression(expression) is MISSING:
                            unresolved.setdefault(f"{{{expression}}}", None)
                elif is_reference(item) and self.resolve_expression(item) is MISSING:
                    unresolved.setdefault(item.strip(), None)
            elif isinstance(item, list):
                for child in item:
                    visit(child)
            elif isinstance(item, dict):
                for child in item.values():
                    visit(child)

        visit(value)
        return list(unresolved)

    def collect_variables(self, value: Any) -> dict[str, Any]:
        """Map each resolvable reference in ``value`` to its current value."""
        variables: dict[str, Any] = {}

        def visit(item: Any) -> None:
            if isinstance(item, str):
                expressions = template_expressions(item)
                if not expressions and is_reference(item):
                    expressions = [item]
                for expression in expressions:
                    result = self.resolve_expression(expression)
                    if result is not MISSING:
                        variables[expression.strip()] = result
            elif isinstance(item, list):
                for child in item:
                    visit(child)
            elif isinstance(item, dict):
                for child in item.values():
                    visit(child)

        visit(value)
        return variables

    # -------------------------------------------------------------------------
    # Filters
    # -------------------------------------------------------------------------

    def resolve_filter(self, filter_: dict[str, Any]) -> dict[str, Any]:
        """
        Resolve a query filter.

        Inside list-valued fields a reference that resolves to a list is
        spread in place, so ``{"authors": ["$contacts"]}`` becomes the list
        of contact pubkeys rather than a nested list.
        """
        resolved: dict[str, Any] = {}
        for key, value in filter_.items():
            if isinstance(value, list):
                items: list[Any] = []
                for item in value:
                    result = self.resolve(item)
                    if isinstance(item, str) and isinstance(result, list):
                        items.extend(result)
                    else:
                        items.append(result)
                resolved[key] = items
            else:
                resolved[key] = self.resolve(value)
        return resolved
