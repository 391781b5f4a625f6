"""
Query Planner for Hypernote.

Collapses the N+1 fetches created when many component instances each ask
for "the same kind of data for a different target" into one fetch per
distinct query shape.

Two phases:
1. Planning: ``register`` collects ``(query_id, filter, pipe, owner_id)``
   registrations and hands back a future per registrant. Nothing runs.
2. Executing: triggered by the debounce window elapsing after the last
   registration, by ``expect(n)`` registrants having reported, or by an
   explicit ``seal()``. A fresh planning cycle opens immediately.

Batching Rules:
- Registrations with the same filter and pipe share one slot
- Slots whose filters are equal in every field except ``authors`` / ``ids``
  and whose pipes are equal are merged; ``authors`` / ``ids`` become the
  order-preserving, de-duplicated union
- A ``limit`` on a merged filter is multiplied by the number of slots;
  each slot's own ``limit`` is re-applied on fan-out
- Fan-out filters the fetched events back to each slot's own filter, then
  applies its pipe

Usage:
    planner = QueryPlanner(transport.fetch, cache=cache, debounce=0.05)
    futures = [planner.register(f"profile:{pk}", {"kinds": [0], "authors": [pk]})
               for pk in pubkeys]
    planner.seal()
    profiles = await asyncio.gather(*futures)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from hypernote.cache import QueryCache
from hypernote.errors import TransportError
from hypernote.filters import canonical_json, matches_filter
from hypernote.observability import EngineMetrics
from hypernote.pipes import PipeOp, apply_pipe, dump_pipe, parse_pipe

logger = logging.getLogger(__name__)

Fetcher = Callable[[dict[str, Any]], Awaitable[list[dict[str, Any]]]]

# Filter fields merged by union across a batch
MERGEABLE_FIELDS = ("authors", "ids")

DEFAULT_DEBOUNCE = 0.05  # seconds
DEFAULT_FETCH_TIMEOUT = 10.0  # seconds


@dataclass
class Registrant:
    query_id: str
    owner_id: str | None
    future: asyncio.Future
    raw: bool = False


@dataclass
class Slot:
    """Registrations with an identical filter and pipe."""

    key: str
    filter: dict[str, Any]
    pipe: list[PipeOp]
    registrants: list[Registrant] = field(default_factory=list)

    @property
    def limit(self) -> int | None:
        limit = self.filter.get("limit")
        return limit if isinstance(limit, int) and limit >= 0 else None


@dataclass
class Batch:
    """One transport fetch and the slots it serves."""

    filter: dict[str, Any]
    slots: list[Slot]


def _union(values: list[list[Any]]) -> list[Any]:
    seen: set[Any] = set()
    merged: list[Any] = []
    for value in itertools.chain.from_iterable(values):
        if value not in seen:
            seen.add(value)
            merged.append(value)
    return merged


def shape_key(filter_: dict[str, Any], pipe: list[PipeOp]) -> str:
    """Identity of a query shape: everything but the mergeable values."""
    rest = {key: value for key, value in filter_.items() if key not in MERGEABLE_FIELDS}
    present = [name for name in MERGEABLE_FIELDS if name in filter_]
    return canonical_json({"filter": rest, "merge": present, "pipe": dump_pipe(pipe)})


def plan(slots: list[Slot]) -> list[Batch]:
    """
    Group slots into batches. Pure: no I/O, no mutation of the slots.

    Example:
        plan([Slot(..., {"kinds": [0], "authors": ["a"]}, []),
              Slot(..., {"kinds": [0], "authors": ["b"]}, [])])
        # [Batch({"kinds": [0], "authors": ["a", "b"]}, [slot_a, slot_b])]
    """
    groups: dict[str, list[Slot]] = {}
    for slot in slots:
        groups.setdefault(shape_key(slot.filter, slot.pipe), []).append(slot)

    batches: list[Batch] = []
    for members in groups.values():
        merged = dict(members[0].filter)
        for name in MERGEABLE_FIELDS:
            if name in merged:
                merged[name] = _union([list(slot.filter.get(name) or []) for slot in members])
        limit = members[0].limit
        if limit is not None:
            merged["limit"] = limit * len(members)
        batches.append(Batch(filter=merged, slots=members))
    return batches


class QueryPlanner:
    """
    Two-phase batching front of the transport.

    Args:
        fetcher: Coroutine function performing the merged fetch
        cache: Optional query cache; cached slots are served without
            fetching and fanned-out events are written back per slot
        debounce: Seconds of registration silence before a batch runs
        fetch_timeout: Upper bound on one merged fetch in seconds
        metrics: Engine counters
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        cache: QueryCache | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        metrics: EngineMetrics | None = None,
    ):
        self._fetcher = fetcher
        self._cache = cache
        self.debounce = debounce
        self.fetch_timeout = fetch_timeout
        self._metrics = metrics or EngineMetrics()

        self._slots: dict[str, Slot] = {}
        self._registrations = 0
        self._expected: int | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._running: set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self.cycles = 0

    # -------------------------------------------------------------------------
    # Planning phase
    # -------------------------------------------------------------------------

    def register(
        self,
        query_id: str,
        filter_: dict[str, Any],
        pipe: Any = None,
        owner_id: str | None = None,
        *,
        raw: bool = False,
    ) -> asyncio.Future:
        """
        Add a query to the current planning cycle.

        The returned future resolves to the piped result for this query's
        own subset of the batch (raw events when ``raw`` is set), or raises
        TransportError when the merged fetch failed.
        """
        loop = asyncio.get_running_loop()
        ops = parse_pipe(pipe or [])
        key = canonical_json({"filter": filter_, "pipe": dump_pipe(ops)})
        slot = self._slots.get(key)
        if slot is None:
            slot = Slot(key=key, filter=dict(filter_), pipe=ops)
            self._slots[key] = slot

        future = loop.create_future()
        slot.registrants.append(Registrant(query_id, owner_id, future, raw))
        self._registrations += 1
        logger.debug(f"[planner] Registered {query_id} (owner={owner_id})")

        if self._expected is not None and self._registrations >= self._expected:
            self.seal()
        else:
            self._restart_timer(loop)
        return future

    def expect(self, count: int) -> None:
        """Run the batch as soon as ``count`` registrations have arrived."""
        self._expected = count
        if self._registrations >= count:
            self.seal()

    def _restart_timer(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce, self.seal)

    def seal(self) -> asyncio.Task | None:
        """
        Close the planning cycle and start executing it.

        Returns the execution task, or None when nothing was registered.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        slots = list(self._slots.values())
        self._slots = {}
        self._registrations = 0
        self._expected = None
        if not slots:
            return None

        self.cycles += 1
        task = asyncio.ensure_future(self._run_batch(slots))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return task

    async def flush(self) -> None:
        """Seal the current cycle and wait until every batch has fanned out."""
        self.seal()
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    def reset(self) -> None:
        """Drop the current planning cycle; its registrants are cancelled."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for slot in self._slots.values():
            for registrant in slot.registrants:
                registrant.future.cancel()
        self._slots = {}
        self._registrations = 0
        self._expected = None

    async def fetch(self, filter_: dict[str, Any], owner_id: str | None = None) -> list[dict[str, Any]]:
        """Executor-facing fetcher: raw events for ``filter_`` via the batch."""
        future = self.register(f"fetch-{next(self._ids)}", filter_, owner_id=owner_id, raw=True)
        return await future

    # -------------------------------------------------------------------------
    # Executing phase
    # -------------------------------------------------------------------------

    async def _run_batch(self, slots: list[Slot]) -> None:
        remaining: list[Slot] = []
        for slot in slots:
            cached = self._cache.peek(slot.filter) if self._cache is not None else None
            if cached is None:
                remaining.append(slot)
            else:
                logger.debug(f"[planner] Serving {slot.key} from cache")
                self._deliver(slot, cached)

        batches = plan(remaining)
        if batches:
            logger.info(
                f"[planner] Executing {len(batches)} fetches for "
                f"{sum(len(batch.slots) for batch in batches)} query shapes"
            )
        await asyncio.gather(*(self._execute(batch) for batch in batches))

    async def _execute(self, batch: Batch) -> None:
        self._metrics.batches_executed += 1
        try:
            events = await asyncio.wait_for(self._fetcher(batch.filter), timeout=self.fetch_timeout)
        except TimeoutError:
            self._metrics.record_fetch(timed_out=True)
            logger.warning(f"[planner] Batch fetch timed out after {self.fetch_timeout}s")
            for slot in batch.slots:
                self._deliver(slot, [])
            return
        except Exception as e:
            self._metrics.record_fetch(failed=True)
            logger.error(f"[planner] Batch fetch failed: {e}")
            error = TransportError("fetch", str(e))
            for slot in batch.slots:
                for registrant in slot.registrants:
                    if not registrant.future.done():
                        registrant.future.set_exception(error)
            return

        self._metrics.record_fetch()
        events = list(events or [])
        for slot in batch.slots:
            own = [event for event in events if matches_filter(event, slot.filter)]
            if slot.limit is not None:
                own = own[: slot.limit]
            if self._cache is not None:
                self._cache.set(slot.filter, own)
            self._deliver(slot, own)

    def _deliver(self, slot: Slot, events: list[dict[str, Any]]) -> None:
        piped: Any = None
        pipe_error: Exception | None = None
        if any(not registrant.raw for registrant in slot.registrants):
            try:
                piped = apply_pipe(events, slot.pipe) if slot.pipe else list(events)
            except Exception as e:
                logger.error(f"[planner] Pipe failed for {slot.key}: {e}")
                pipe_error = e

        for registrant in slot.registrants:
            if registrant.future.done():
                continue
            if registrant.raw:
                registrant.future.set_result(list(events))
            elif pipe_error is not None:
                registrant.future.set_exception(pipe_error)
            else:
                registrant.future.set_result(piped)

    def stats(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "planning_slots": len(self._slots),
            "planning_registrations": self._registrations,
            "running": len(self._running),
        }
