"""
Hypernote - A live query engine for declarative documents on Nostr-style relays.

Hypernote consumes an already-compiled document (named queries, actions and
pipes) and keeps its results current for a display layer, with features like:

- **Dependency-Aware Execution**: Queries referencing other queries run after them
- **Pipe Engine**: Composable, pure transformations of query results
- **Shared Cache & Subscriptions**: One fetch and one live subscription per filter
- **Query Planner**: Collapses per-instance N+1 fetches into one batched fetch
- **Actions**: Template-driven publishing with chained triggers

Quick Start:
    >>> from hypernote import HypernoteEngine, InMemoryTransport, InMemorySigner
    >>>
    >>> engine = HypernoteEngine(InMemoryTransport(), signer=InMemorySigner())
    >>> document = {
    ...     "queries": {
    ...         "$contacts": {
    ...             "kinds": [3],
    ...             "authors": ["user.pubkey"],
    ...             "pipe": ["first", {"op": "get", "field": "tags"}, {"op": "pluckIndex", "index": 1}],
    ...         }
    ...     }
    ... }
    >>> result = await engine.run_all(document, user_pubkey=me, live=False)
    >>> result.query_results["$contacts"]
"""

__version__ = "0.1.0"

from hypernote.actions import ActionExecutor, ActionResult
from hypernote.cache import QueryCache
from hypernote.config import EngineSettings, get_settings
from hypernote.document import ActionSpec, Document, QuerySpec
from hypernote.engine import DocumentScope, HypernoteEngine, RunResult
from hypernote.errors import (
    ActionError,
    CycleError,
    HypernoteError,
    TransportError,
    UnresolvedReferenceError,
)
from hypernote.executor import DependencyGraph, ExecutionResult, QueryExecutor
from hypernote.pipes import apply_pipe, parse_pipe
from hypernote.planner import QueryPlanner, TargetBatcher
from hypernote.resolution import ResolutionContext, VariableResolver
from hypernote.subscriptions import SubscriptionManager
from hypernote.transports import InMemorySigner, InMemoryTransport, PublishResult, Signer, Transport

__all__ = [
    # Version info
    "__version__",
    # Engine
    "HypernoteEngine",
    "DocumentScope",
    "RunResult",
    "EngineSettings",
    "get_settings",
    # Document
    "Document",
    "QuerySpec",
    "ActionSpec",
    # Execution
    "DependencyGraph",
    "QueryExecutor",
    "ExecutionResult",
    "ActionExecutor",
    "ActionResult",
    "ResolutionContext",
    "VariableResolver",
    "apply_pipe",
    "parse_pipe",
    # Services
    "QueryCache",
    "SubscriptionManager",
    "QueryPlanner",
    "TargetBatcher",
    # Transports
    "Transport",
    "Signer",
    "PublishResult",
    "InMemoryTransport",
    "InMemorySigner",
    # Errors
    "HypernoteError",
    "CycleError",
    "UnresolvedReferenceError",
    "TransportError",
    "ActionError",
]
