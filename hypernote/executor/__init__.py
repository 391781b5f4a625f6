"""
Dependency-aware query execution.

Usage:
    from hypernote.executor import QueryExecutor

    executor = QueryExecutor(document.queries, context, fetch=cache.get_or_fetch)
    result = await executor.execute_all()
"""

from .executor import ExecutionResult, QueryExecutor, QueryOutcome, QueryStatus
from .graph import DependencyGraph, NodeState

__all__ = [
    "DependencyGraph",
    "ExecutionResult",
    "NodeState",
    "QueryExecutor",
    "QueryOutcome",
    "QueryStatus",
]
