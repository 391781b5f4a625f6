"""
Query Executor for Hypernote.

Runs the named queries of one document scope in dependency order.

Execution Model:
- A pass orders the selected queries with DependencyGraph and starts all
  of them concurrently (asyncio.gather); each waits only for the selected
  queries it references, never for unrelated slow ones
- A query reaches the transport only after every query it references
  has completed in this or an earlier pass
- A query whose filter still holds unresolved references, or whose
  dependency is pending or failed, yields [] and is reported pending;
  ``execute_pending`` retries it once the context has what it needs
- Per-query failures (transport errors, pipe bugs) are contained in
  ``ExecutionResult.errors``; a CycleError aborts the pass

Example:
    executor = QueryExecutor(document.queries, context, fetch=cache.get_or_fetch)
    result = await executor.execute_all()
    result.query_results["$contacts"]      # ["abc", "def"]
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from hypernote.document.models import QuerySpec
from hypernote.errors import CycleError, UnresolvedReferenceError
from hypernote.observability import EngineMetrics, ExecutionLogger
from hypernote.pipes import apply_pipe
from hypernote.resolution import ResolutionContext, VariableResolver, query_key

from .graph import DependencyGraph

logger = logging.getLogger(__name__)

Fetch = Callable[[dict[str, Any]], Awaitable[list[dict[str, Any]]]]


class QueryStatus(Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class QueryOutcome:
    """What one query produced in one pass."""

    name: str
    status: QueryStatus
    value: Any = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    resolved_filter: dict[str, Any] | None = None
    unresolved: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def completed(self) -> bool:
        return self.status is QueryStatus.COMPLETED


@dataclass
class ExecutionResult:
    """
    Result of one execution pass.

    Pending and failed queries appear in ``query_results`` as ``[]``.
    """

    query_results: dict[str, Any] = field(default_factory=dict)
    resolved_filters: dict[str, dict[str, Any]] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    extracted_variables: dict[str, Any] = field(default_factory=dict)
    timings: dict[str, float] = field(default_factory=dict)
    outcomes: dict[str, QueryOutcome] = field(default_factory=dict, repr=False)

    @property
    def success(self) -> bool:
        return not self.pending and not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Serialize result for logging."""
        return {
            "query_results": self.query_results,
            "resolved_filters": self.resolved_filters,
            "pending": self.pending,
            "errors": self.errors,
            "extracted_variables": self.extracted_variables,
            "timings": {name: round(ms, 2) for name, ms in self.timings.items()},
        }


class QueryExecutor:
    """
    Dependency-aware executor for one document scope.

    Args:
        queries: Named query specs (``$name`` keys)
        context: The scope's resolution context; completed results are
            written into it
        fetch: Coroutine returning raw events for a resolved filter
            (QueryCache.get_or_fetch or QueryPlanner.fetch)
        on_outcome: Awaited after every query of a pass, completed or not
            (live wiring)
        log: Lifecycle logger
        metrics: Engine counters
    """

    def __init__(
        self,
        queries: Mapping[str, QuerySpec],
        context: ResolutionContext,
        fetch: Fetch,
        *,
        on_outcome: Callable[[QueryOutcome], Awaitable[None]] | None = None,
        log: ExecutionLogger | None = None,
        metrics: EngineMetrics | None = None,
    ):
        self.queries: dict[str, QuerySpec] = {query_key(name): spec for name, spec in queries.items()}
        self.context = context
        self._fetch = fetch
        self._on_outcome = on_outcome
        self._log = log or ExecutionLogger(scope_id=context.scope_id)
        self._metrics = metrics or EngineMetrics()
        self._graph = DependencyGraph(self.queries)
        self._outcomes: dict[str, QueryOutcome] = {}
        self._pass_lock = asyncio.Lock()

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def pending(self) -> list[str]:
        return [name for name, o in self._outcomes.items() if not o.completed]

    def outcome(self, name: str) -> QueryOutcome | None:
        return self._outcomes.get(query_key(name))

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    async def execute_all(self) -> ExecutionResult:
        """Run every query. Results of earlier passes are discarded."""
        return await self._run_pass(self._graph.nodes, force=True)

    async def execute_pending(self) -> ExecutionResult:
        """Retry pending and failed queries (and their dependents)."""
        retry = self.pending
        retry.extend(name for name in self.queries if name not in self._outcomes)
        if not retry:
            return self._snapshot([])
        targets = set(retry) | self._graph.descendants(retry)
        return await self._run_pass(targets, force=True)

    async def refresh(self, names: Iterable[str]) -> ExecutionResult:
        """Re-run ``names`` and every query that depends on them."""
        names = [query_key(name) for name in names if query_key(name) in self.queries]
        targets = set(names) | self._graph.descendants(names)
        return await self._run_pass(targets, force=True)

    async def refresh_dependents(self, name: str) -> ExecutionResult:
        """Re-run the queries that depend on ``name`` (not ``name`` itself)."""
        return await self._run_pass(self._graph.descendants([query_key(name)]), force=True)

    def add_query(self, name: str, spec: QuerySpec | dict[str, Any]) -> str:
        """Add a query mid-session. Its dependencies are resolved on execution."""
        if isinstance(spec, dict):
            spec = QuerySpec.model_validate(spec)
        name = query_key(name)
        self.queries[name] = spec
        self._graph = DependencyGraph(self.queries)
        self._outcomes.pop(name, None)
        return name

    async def execute_query(self, name: str) -> Any:
        """
        Run one query together with whichever of its ancestors have not
        completed yet. Returns the query's value ([] when pending).

        Raises:
            KeyError: unknown query
            CycleError: the query takes part in a cycle
        """
        name = query_key(name)
        if name not in self.queries:
            raise KeyError(name)
        ancestors = self._graph.order([name])
        targets = [n for n in ancestors if n == name or n not in self._outcomes or not self._outcomes[n].completed]
        result = await self._run_pass(targets, force=True)
        return result.query_results.get(name, [])

    def mentioning(self, reference: str) -> list[str]:
        """Queries whose filter mentions ``reference`` (``$q`` or ``@action``)."""
        return [name for name, spec in self.queries.items() if reference in spec.references]

    async def _run_pass(self, names: Iterable[str], *, force: bool) -> ExecutionResult:
        selected = [name for name in names if name in self.queries]
        async with self._pass_lock:
            started = time.perf_counter()
            try:
                waves = self._graph.levels(selected)
            except CycleError as e:
                self._log.cycle_detected(list(e.path))
                raise

            self._log.pass_started(queries=[name for wave in waves for name in wave])
            for name in selected:
                if force:
                    self._outcomes.pop(name, None)

            settled = {name: asyncio.Event() for wave in waves for name in wave}
            await asyncio.gather(*(self._schedule(name, settled) for name in settled))

            duration_ms = (time.perf_counter() - started) * 1000
            result = self._snapshot(selected)
            self._metrics.record_pass(duration_ms)
            self._log.pass_completed(
                duration_ms=duration_ms,
                completed=sum(1 for name in selected if self._outcomes[name].completed),
                pending=len(result.pending),
                errors=len(result.errors),
            )
            return result

    async def _schedule(self, name: str, settled: dict[str, asyncio.Event]) -> None:
        try:
            for dependency in self._nearest_selected(name, settled):
                await settled[dependency].wait()
            outcome = await self._run_query(name)
            self._outcomes[name] = outcome
        finally:
            settled[name].set()

        if self._on_outcome is not None:
            try:
                await self._on_outcome(outcome)
            except Exception as e:
                logger.error(f"[executor] on_outcome hook failed for {name}: {e}")

    def _nearest_selected(self, name: str, selected: Mapping[str, Any]) -> set[str]:
        # Unselected ancestors are not re-run but still order selected ones
        found: set[str] = set()
        visited: set[str] = set()
        stack = self._graph.dependencies(name)
        while stack:
            dependency = stack.pop()
            if dependency in visited:
                continue
            visited.add(dependency)
            if dependency in selected:
                found.add(dependency)
            else:
                stack.extend(self._graph.dependencies(dependency))
        return found

    def record_live(self, name: str, value: Any, events: list[dict[str, Any]]) -> None:
        """Adopt a live update as the completed value of ``name``."""
        name = query_key(name)
        outcome = self._outcomes.get(name)
        if outcome is None or not outcome.completed:
            return
        outcome.value = value
        outcome.events = list(events)
        self.context.set_query_result(name, value)

    def snapshot(self) -> ExecutionResult:
        """Current state of every query, without running anything."""
        return self._snapshot(self.queries)

    def _snapshot(self, names: Iterable[str]) -> ExecutionResult:
        result = ExecutionResult()
        for name in self.queries:
            outcome = self._outcomes.get(name)
            if outcome is None:
                continue
            result.outcomes[name] = outcome
            result.query_results[name] = outcome.value if outcome.completed else []
            result.timings[name] = outcome.duration_ms
            if outcome.resolved_filter is not None:
                result.resolved_filters[name] = outcome.resolved_filter
            if outcome.status is QueryStatus.PENDING:
                result.pending.append(name)
            elif outcome.status is QueryStatus.FAILED:
                result.pending.append(name)
                result.errors[name] = outcome.error or "failed"
        resolver = VariableResolver(self.context)
        for name in names:
            spec = self.queries.get(name)
            if spec is not None:
                result.extracted_variables.update(resolver.collect_variables(spec.filter))
        return result

    # -------------------------------------------------------------------------
    # Single query
    # -------------------------------------------------------------------------

    async def _run_query(self, name: str) -> QueryOutcome:
        spec = self.queries[name]
        started = time.perf_counter()

        blocked = [
            dependency
            for dependency in self._graph.dependencies(name)
            if dependency not in self._outcomes or not self._outcomes[dependency].completed
        ]
        if blocked:
            self._log.query_pending(name, blocked)
            return QueryOutcome(name, QueryStatus.PENDING, unresolved=blocked)

        resolver = VariableResolver(self.context)
        unresolved = resolver.find_unresolved(spec.filter)
        if unresolved:
            pending = UnresolvedReferenceError(name, unresolved)
            logger.debug(f"[executor] {pending}")
            self._log.query_pending(name, unresolved)
            return QueryOutcome(name, QueryStatus.PENDING, unresolved=unresolved)

        resolved = resolver.resolve_filter(spec.filter)
        try:
            events = await self._fetch(resolved)
            value = apply_pipe(events, spec.pipe) if spec.pipe else list(events)
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            self._log.query_failed(name, str(e), type(e).__name__)
            return QueryOutcome(
                name,
                QueryStatus.FAILED,
                resolved_filter=resolved,
                error=str(e),
                duration_ms=duration_ms,
            )

        self.context.set_query_result(name, value)
        duration_ms = (time.perf_counter() - started) * 1000
        self._log.query_completed(
            name, duration_ms, len(value) if isinstance(value, (list, dict, str)) else None
        )
        return QueryOutcome(
            name,
            QueryStatus.COMPLETED,
            value=value,
            events=list(events),
            resolved_filter=resolved,
            duration_ms=duration_ms,
        )
