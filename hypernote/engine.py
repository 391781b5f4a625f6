"""
Hypernote Engine.

The facade the presentation layer talks to. The engine owns the
process-wide services (query cache, subscription manager, planner, target
batcher, metrics); every document rendered gets its own DocumentScope with
its own resolution context, executors and live queries.

Architecture:
    HypernoteEngine (one per process)
      ├── QueryCache            shared, keyed by canonical filter
      ├── SubscriptionManager   shared, reference counted per filter
      ├── QueryPlanner          shared batching front of the transport
      ├── TargetBatcher         shared profile / record lookups
      └── DocumentScope (one per rendered document or component instance)
            ├── ResolutionContext
            ├── QueryExecutor   dependency-ordered passes
            ├── ActionExecutor  publish + chained triggers
            └── LiveQuery per completed query, fed by one update worker

Live events of a scope flow through a single asyncio.Queue processed by a
single worker task, so updates are applied in arrival order. After
``close()`` nothing more is delivered to the scope.

Usage:
    engine = HypernoteEngine(transport, signer=signer)

    async with engine.open_scope(document, user_pubkey=me, on_update=render) as scope:
        result = await scope.run_all()
        render(result.query_results)
        await scope.execute_action("@like", {"note": note_id})

    # One-shot snapshot without live updates
    result = await engine.run_all(document, user_pubkey=me, live=False)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from hypernote.actions import ActionExecutor, ActionResult
from hypernote.cache import QueryCache
from hypernote.config import EngineSettings, get_settings
from hypernote.document.models import Document, QuerySpec
from hypernote.errors import ScopeClosedError, TransportError
from hypernote.executor import ExecutionResult, QueryExecutor, QueryOutcome
from hypernote.filters import canonical_filter_key, stable_hash
from hypernote.live import LiveQuery, LiveUpdate, TriggerGate
from hypernote.observability import EngineMetrics, ExecutionLogger
from hypernote.planner import QueryPlanner, TargetBatcher, parse_target
from hypernote.resolution import Clock, ResolutionContext, SystemClock, action_key, query_key
from hypernote.subscriptions import SubscriptionManager
from hypernote.transports.protocol import Signer, Transport

logger = logging.getLogger(__name__)

# (partial_results) -> None, sync or async
UpdateCallback = Callable[[dict[str, Any]], Any]


@dataclass
class RunResult:
    """Snapshot returned by ``run_all``."""

    query_results: dict[str, Any] = field(default_factory=dict)
    extracted_variables: dict[str, Any] = field(default_factory=dict)
    pending: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    triggered: list[ActionResult] = field(default_factory=list)
    scope: "DocumentScope | None" = field(default=None, repr=False)

    @classmethod
    def from_execution(cls, result: ExecutionResult, **extra: Any) -> "RunResult":
        return cls(
            query_results=result.query_results,
            extracted_variables=result.extracted_variables,
            pending=result.pending,
            errors=result.errors,
            **extra,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_results": self.query_results,
            "extracted_variables": self.extracted_variables,
            "pending": self.pending,
            "errors": self.errors,
            "triggered": [result.to_dict() for result in self.triggered],
        }


# =============================================================================
# Document Scope
# =============================================================================


class DocumentScope:
    """
    One rendered document (or nested component instance).

    Created by ``HypernoteEngine.open_scope`` or ``DocumentScope.derive``;
    not meant to be constructed directly.
    """

    def __init__(
        self,
        engine: "HypernoteEngine",
        document: Document,
        context: ResolutionContext,
        *,
        on_update: UpdateCallback | None = None,
        live: bool = True,
        batched: bool = False,
    ):
        self.engine = engine
        self.document = document
        self.context = context
        self.live = live
        self.batched = batched
        self._on_update = on_update
        self._log = ExecutionLogger(scope_id=context.scope_id)

        fetch = (
            partial(engine.planner.fetch, owner_id=context.scope_id)
            if batched
            else engine.cache.get_or_fetch
        )
        self.executor = QueryExecutor(
            document.queries,
            context,
            fetch,
            on_outcome=self._sync_live,
            log=self._log,
            metrics=engine.metrics,
        )
        self.actions = ActionExecutor(
            document.events,
            context,
            engine.transport,
            engine.signer,
            engine.cache,
            max_chain_depth=engine.settings.max_chain_depth,
            on_published=self._after_publish,
            metrics=engine.metrics,
            log=self._log,
        )

        self._live: dict[str, LiveQuery] = {}
        self._gates: dict[str, TriggerGate] = {}
        self._queue: asyncio.Queue[tuple[LiveQuery, dict[str, Any]]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._children: list[DocumentScope] = []
        self._closed = False
        self.triggered: list[ActionResult] = []

    @property
    def scope_id(self) -> str:
        return self.context.scope_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def live_queries(self) -> dict[str, LiveQuery]:
        return dict(self._live)

    # -------------------------------------------------------------------------
    # Presentation-facing API
    # -------------------------------------------------------------------------

    async def run_all(self) -> RunResult:
        """
        Execute every query, attach live subscriptions and fire initial
        triggers.

        Raises:
            CycleError: the document's queries depend on each other in a cycle
        """
        self._ensure_open()
        if self.live:
            self._ensure_worker()

        result = await self.executor.execute_all()

        triggered: list[ActionResult] = []
        if self.engine.settings.fire_initial_triggers:
            for name, spec in self.executor.queries.items():
                outcome = self.executor.outcome(name)
                if spec.triggers is None or outcome is None or not outcome.completed:
                    continue
                if self._gate(name).should_fire(outcome.value):
                    triggered.append(await self._fire_trigger(name, spec))
        if triggered:
            result = self.executor.snapshot()

        logger.info(
            f"[engine] Scope {self.scope_id} ran {len(self.executor.queries)} queries "
            f"(pending={len(result.pending)}, errors={len(result.errors)})"
        )
        return RunResult.from_execution(result, triggered=triggered, scope=self)

    async def execute_action(
        self, name: str, form_data: dict[str, Any] | None = None
    ) -> ActionResult:
        """Publish an action. Never raises; see ``ActionResult.reason``."""
        if self._closed:
            logger.warning(f"[engine] execute_action({name}) on closed scope {self.scope_id}")
            return ActionResult.failed(action_key(name), ScopeClosedError(action_key(name), self.scope_id))
        return await self.actions.execute(name, form_data)

    async def add_query(self, name: str, spec: QuerySpec | dict[str, Any]) -> Any:
        """Add a query mid-session and run it (with any ancestors not yet run)."""
        self._ensure_open()
        name = self.executor.add_query(name, spec)
        return await self.executor.execute_query(name)

    async def derive(self, target: Any, document: Document | dict[str, Any] | None = None) -> "DocumentScope":
        """
        Nested component scope sharing this scope's services.

        ``target`` may be a resolved target dict or a pubkey / record id,
        which is looked up according to the document's component kind.
        """
        self._ensure_open()
        if isinstance(document, dict):
            document = Document.model_validate(document)
        document = document or self.document
        resolved = await self.engine.resolve_target(target, document.component_kind)
        child = DocumentScope(
            self.engine,
            document,
            self.context.derive(resolved),
            on_update=self._on_update,
            live=self.live,
            batched=self.batched,
        )
        self._children.append(child)
        return child

    async def drain(self) -> None:
        """Wait until every queued live event (and its cascade) is processed."""
        if self._worker is not None and not self._closed:
            await self._queue.join()
        for child in list(self._children):
            await child.drain()

    async def close(self) -> None:
        """Cancel owned subscriptions and stop the update worker."""
        if self._closed:
            return
        self._closed = True
        for live in self._live.values():
            live.close()
        self._live.clear()
        for child in self._children:
            await child.close()
        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self.engine._forget(self)
        logger.debug(f"[engine] Scope {self.scope_id} closed")

    async def __aenter__(self) -> "DocumentScope":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Live wiring
    # -------------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Scope {self.scope_id} is closed")

    def _ensure_worker(self) -> None:
        if self._worker is None:
            self._worker = asyncio.ensure_future(self._process_updates())

    def _gate(self, name: str) -> TriggerGate:
        return self._gates.setdefault(name, TriggerGate())

    async def _sync_live(self, outcome: QueryOutcome) -> None:
        name = outcome.name
        if not outcome.completed:
            # A query that fell back to pending stops listening on its old filter
            stale = self._live.pop(name, None)
            if stale is not None:
                stale.close()
                logger.debug(f"[engine] {name} is {outcome.status.value}, live query closed")
            return
        if not self.live or self._closed or outcome.resolved_filter is None:
            return
        existing = self._live.get(name)
        if existing is not None:
            if canonical_filter_key(existing.filter) == canonical_filter_key(outcome.resolved_filter):
                existing.reset(outcome.events, outcome.value)
                return
            existing.close()

        live = LiveQuery(
            name,
            self.executor.queries[name],
            outcome.resolved_filter,
            self.engine.cache,
            self.engine.subscriptions,
            enqueue=self._enqueue,
            events=outcome.events,
            value=outcome.value,
            gate=self._gate(name),
            metrics=self.engine.metrics,
            log=self._log,
        )
        self._live[name] = live
        try:
            await live.start()
        except TransportError as e:
            logger.warning(f"[engine] {name} stays static, live subscription failed: {e}")
            self._live.pop(name, None)

    def _enqueue(self, live: LiveQuery, event: dict[str, Any]) -> None:
        if self._closed:
            return
        self._ensure_worker()
        self._queue.put_nowait((live, event))

    async def _process_updates(self) -> None:
        while not self._closed:
            live, event = await self._queue.get()
            try:
                update = await live.handle_event(event)
                if update is not None and not self._closed:
                    await self._apply_update(update, live.events)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"[engine] Live update for {live.name} failed on event {event.get('id')}: {e}",
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def _apply_update(self, update: LiveUpdate, events: list[dict[str, Any]]) -> None:
        self.executor.record_live(update.query, update.value, events)
        changed = {update.query: update.value}

        dependents = self.executor.graph.descendants([update.query])
        if dependents:
            before = {name: self.context.get_query_result(name) for name in dependents}
            result = await self.executor.refresh_dependents(update.query)
            for name in dependents:
                value = result.query_results.get(name)
                if stable_hash(value) != stable_hash(before[name]):
                    changed[name] = value

        await self._notify(changed)

        if update.fire_trigger:
            spec = self.executor.queries[update.query]
            self.triggered.append(await self._fire_trigger(update.query, spec))

    async def _fire_trigger(self, name: str, spec: QuerySpec) -> ActionResult:
        self.engine.metrics.triggers_fired += 1
        self._log.trigger_fired(name, spec.triggers)
        return await self.actions.execute(spec.triggers)

    async def _after_publish(self, action: str, record_id: str) -> None:
        targets = set(self.executor.mentioning(action)) | set(self.executor.pending)
        if not targets or self._closed:
            return
        affected = targets | self.executor.graph.descendants(targets)
        before = {name: self.context.get_query_result(name) for name in affected}
        result = await self.executor.refresh(targets)
        changed = {
            name: value
            for name, value in result.query_results.items()
            if name in affected and stable_hash(value) != stable_hash(before.get(name))
        }
        await self._notify(changed)

    async def _notify(self, changed: dict[str, Any]) -> None:
        if not changed or self._closed or self._on_update is None:
            return
        try:
            outcome = self._on_update(changed)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"[engine] on_update callback failed: {e}", exc_info=True)


# =============================================================================
# Engine
# =============================================================================


class HypernoteEngine:
    """
    Process-wide services plus scope factory.

    Args:
        transport: Event network transport
        signer: Record signer; without one every action fails with ``no_signer``
        settings: Engine settings (defaults to ``get_settings()``)
        cache, subscriptions, planner, target_batcher: Pre-built services
            (built from ``settings`` when omitted)
        clock: Time source for ``time.now`` (system clock by default)
        metrics: Shared counters
    """

    def __init__(
        self,
        transport: Transport,
        signer: Signer | None = None,
        settings: EngineSettings | None = None,
        *,
        cache: QueryCache | None = None,
        subscriptions: SubscriptionManager | None = None,
        planner: QueryPlanner | None = None,
        target_batcher: TargetBatcher | None = None,
        clock: Clock | None = None,
        metrics: EngineMetrics | None = None,
    ):
        self.transport = transport
        self.signer = signer
        self.settings = settings or get_settings()
        self.metrics = metrics or EngineMetrics()
        self.clock = clock or SystemClock()

        self.cache = cache or QueryCache(
            transport.fetch,
            ttl=self.settings.cache_ttl_seconds,
            max_entries=self.settings.cache_max_entries,
            fetch_timeout=self.settings.fetch_timeout_seconds,
            metrics=self.metrics,
        )
        self.subscriptions = subscriptions or SubscriptionManager(transport)
        self.planner = planner or QueryPlanner(
            transport.fetch,
            cache=self.cache,
            debounce=self.settings.planner_debounce_seconds,
            fetch_timeout=self.settings.fetch_timeout_seconds,
            metrics=self.metrics,
        )
        self.target_batcher = target_batcher or TargetBatcher(
            transport.fetch,
            ttl=self.settings.target_cache_ttl_seconds,
            fetch_timeout=self.settings.fetch_timeout_seconds,
            metrics=self.metrics,
        )
        self._scopes: list[DocumentScope] = []

    def open_scope(
        self,
        document: Document | dict[str, Any],
        *,
        user_pubkey: str | None = None,
        target: dict[str, Any] | None = None,
        action_results: dict[str, str] | None = None,
        form_data: dict[str, Any] | None = None,
        on_update: UpdateCallback | None = None,
        live: bool | None = None,
        batched: bool = False,
    ) -> DocumentScope:
        """
        Create a scope for a compiled document.

        Args:
            document: Compiled document (model or dict)
            user_pubkey: The viewing user (``user.pubkey``)
            target: Resolved component target (``target.*``)
            action_results: Previously published action ids (``@name``)
            form_data: Initial form values (``form.*``)
            on_update: Called with ``{query: value}`` for every changed,
                de-duplicated update
            live: Keep results live (defaults to ``settings.live_updates``)
            batched: Route fetches through the shared QueryPlanner
        """
        if isinstance(document, dict):
            document = Document.model_validate(document)
        context = ResolutionContext(user_pubkey=user_pubkey, target=target, clock=self.clock)
        context.update(action_results=action_results, form_data=form_data)
        scope = DocumentScope(
            self,
            document,
            context,
            on_update=on_update,
            live=self.settings.live_updates if live is None else live,
            batched=batched,
        )
        self._scopes.append(scope)
        logger.debug(f"[engine] Opened scope {scope.scope_id}")
        return scope

    async def run_all(self, document: Document | dict[str, Any], **options: Any) -> RunResult:
        """
        Resolve a document once.

        Accepts the keyword options of ``open_scope``. With live updates on,
        the returned ``RunResult.scope`` stays open and must be closed by
        the caller; otherwise it is closed before returning.
        """
        scope = self.open_scope(document, **options)
        try:
            result = await scope.run_all()
        except BaseException:
            await scope.close()
            raise
        if not scope.live:
            await scope.close()
            result.scope = None
        return result

    async def execute_query(self, document: Document | dict[str, Any], name: str, **options: Any) -> Any:
        """Run a single query of a document (and its ancestors) without live updates."""
        options["live"] = False
        scope = self.open_scope(document, **options)
        try:
            return await scope.executor.execute_query(query_key(name))
        finally:
            await scope.close()

    async def resolve_target(self, value: Any, kind: int | None) -> dict[str, Any]:
        """Target context for a component argument (pubkey, record id or dict)."""
        return await parse_target(value, kind, self.target_batcher)

    def _forget(self, scope: DocumentScope) -> None:
        if scope in self._scopes:
            self._scopes.remove(scope)

    async def close(self) -> None:
        """Close every open scope and drop planner state."""
        for scope in list(self._scopes):
            await scope.close()
        self.planner.reset()
        self.subscriptions.clear()

    def stats(self) -> dict[str, Any]:
        return {
            **self.metrics.get_stats(),
            "cache": {**self.metrics.get_stats()["cache"], **self.cache.stats()},
            "subscriptions": self.subscriptions.active_count(),
            "scopes": len(self._scopes),
            "planner": self.planner.stats(),
            "targets": self.target_batcher.stats(),
        }
