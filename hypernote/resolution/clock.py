"""
Clock and time expressions.

``time.now`` is expressed in milliseconds since the epoch. Documents
compute relative windows with plain arithmetic, for example
``{time.now - 86400000}`` for "one day ago". Expressions are evaluated by
walking the parsed AST and allowing only numbers, ``+ - * / //`` and
parentheses; anything else is rejected.
"""

from __future__ import annotations

import ast
import logging
import operator
import re
import time
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

TIME_NOW = re.compile(r"\btime\.now\b")


class Clock(Protocol):
    """Source of the current time in milliseconds."""

    def now_ms(self) -> int:
        ...


class SystemClock:
    def now_ms(self) -> int:
        return int(time.time() * 1000)


@dataclass
class FixedClock:
    """Manually advanced clock for tests and replays."""

    now: int = 0

    def now_ms(self) -> int:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += milliseconds


_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
}

_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _evaluate(node: ast.AST) -> int | float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        return _BINARY_OPERATORS[type(node.op)](_evaluate(node.left), _evaluate(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"unsupported expression node {type(node).__name__}")


def evaluate_time_expression(expression: str, now_ms: int) -> int | float | None:
    """
    Evaluate an arithmetic expression over ``time.now``.

    Returns None when the expression does not mention ``time.now`` or uses
    anything beyond basic arithmetic. Whole-valued results are returned as int.
    """
    if not TIME_NOW.search(expression):
        return None
    source = TIME_NOW.sub(str(now_ms), expression)
    try:
        result = _evaluate(ast.parse(source.strip(), mode="eval"))
    except (SyntaxError, ValueError, ZeroDivisionError) as e:
        logger.warning(f"[clock] Rejected time expression {expression!r}: {e}")
        return None
    if isinstance(result, float) and result.is_integer():
        return int(result)
    return result
