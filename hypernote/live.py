"""
Live Queries for Hypernote.

Keeps one completed query of one document scope current as events arrive
on its live subscription.

Update Rules:
- Duplicate suppression by record id is mandatory: an id already seen by
  this query is dropped before any work happens
- Unpiped query: the event is prepended to the cached array and to the
  result; every new event counts as a change
- Piped query: the full matching set is re-fetched through
  ``QueryCache.refresh`` (the live event is added if the relay has not
  indexed it yet) and the pipe is re-applied, since aggregates like
  "count" or "unique authors" cannot be updated from one record without
  drift; every scope listening on the filter shares that one re-fetch
- Every derivation is hashed (``stable_hash``); an unchanged hash is not
  propagated

Trigger Policy:
- Piped: fire the query's ``triggers`` action only when the value changed
  and is non-empty / non-zero (TriggerGate)
- Unpiped: fire on every new event

Usage:
    live = LiveQuery(name, spec, resolved_filter, cache, subscriptions,
                     enqueue=scope.enqueue, events=outcome.events,
                     value=outcome.value, gate=TriggerGate())
    await live.start()
    ...
    update = await live.handle_event(event)   # called by the scope worker
    live.close()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from hypernote.cache import QueryCache
from hypernote.document.models import QuerySpec
from hypernote.errors import TransportError
from hypernote.filters import stable_hash
from hypernote.observability import EngineMetrics, ExecutionLogger
from hypernote.pipes import apply_pipe, is_empty
from hypernote.subscriptions import Subscription, SubscriptionManager

logger = logging.getLogger(__name__)


class TriggerGate:
    """
    Decides whether a query's value should fire its triggered action.

    Fires when the value is non-empty / non-zero and differs from the last
    value that fired. An empty value re-arms the gate.
    """

    def __init__(self) -> None:
        self._last_fired: str | None = None

    def should_fire(self, value: Any) -> bool:
        if is_empty(value):
            self._last_fired = None
            return False
        digest = stable_hash(value)
        if digest == self._last_fired:
            return False
        self._last_fired = digest
        return True

    def reset(self) -> None:
        self._last_fired = None


@dataclass
class LiveUpdate:
    """A propagated change of one query's value."""

    query: str
    value: Any
    event: dict[str, Any]
    fire_trigger: bool = False


class LiveQuery:
    """
    Live state of one query in one scope.

    Args:
        name: Query name (``$name``)
        spec: The query spec (pipe and triggers)
        filter_: The resolved filter the query was executed with
        cache: Shared query cache
        subscriptions: Shared subscription manager
        enqueue: Hands ``(live_query, event)`` to the scope's update worker
        events: Raw events of the completed execution
        value: Piped value of the completed execution
        gate: The query's trigger gate (shared with the scope)
    """

    def __init__(
        self,
        name: str,
        spec: QuerySpec,
        filter_: dict[str, Any],
        cache: QueryCache,
        subscriptions: SubscriptionManager,
        *,
        enqueue: Callable[["LiveQuery", dict[str, Any]], None],
        events: list[dict[str, Any]],
        value: Any,
        gate: TriggerGate | None = None,
        metrics: EngineMetrics | None = None,
        log: ExecutionLogger | None = None,
    ):
        self.name = name
        self.spec = spec
        self.filter = filter_
        self._cache = cache
        self._subscriptions = subscriptions
        self._enqueue = enqueue
        self.gate = gate or TriggerGate()
        self._metrics = metrics or EngineMetrics()
        self._log = log
        self._subscription: Subscription | None = None
        self._closed = False
        self.events: list[dict[str, Any]] = []
        self.value: Any = None
        self._hash: str | None = None
        self._seen: set[str] = set()
        self.reset(events, value)

    @property
    def piped(self) -> bool:
        return bool(self.spec.pipe)

    @property
    def active(self) -> bool:
        return not self._closed and self._subscription is not None and self._subscription.active

    def reset(self, events: list[dict[str, Any]], value: Any) -> None:
        """Adopt the result of a fresh execution as the new baseline."""
        self.events = list(events)
        self.value = value
        self._hash = stable_hash(value)
        self._seen = {event["id"] for event in self.events if event.get("id")}

    async def start(self) -> None:
        """
        Attach to the shared live subscription for this query's filter.

        Raises:
            TransportError: the transport refused the subscription
        """
        if self._subscription is not None:
            return
        self._subscription = await self._subscriptions.ensure_subscription(self.filter, self._on_event)
        logger.debug(f"[live] {self.name} listening on {self._subscription.filter_key}")

    def _on_event(self, event: dict[str, Any]) -> None:
        if self._closed:
            return
        self._enqueue(self, event)

    # -------------------------------------------------------------------------
    # Update handling
    # -------------------------------------------------------------------------

    async def handle_event(self, event: dict[str, Any]) -> LiveUpdate | None:
        """
        Apply one live event. Returns None when nothing changed.
        """
        if self._closed:
            return None

        event_id = event.get("id")
        if event_id and event_id in self._seen:
            self._metrics.duplicates_suppressed += 1
            if self._log:
                self._log.duplicate_suppressed(self.name, event_id)
            return None
        if event_id:
            self._seen.add(event_id)
        self._metrics.live_updates += 1

        if self.piped:
            update = await self._rederive(event)
        else:
            update = self._append(event)

        if self._log:
            self._log.live_update(self.name, event_id or "", update is not None)
        if update is not None:
            self._metrics.live_updates_propagated += 1
        return update

    def _append(self, event: dict[str, Any]) -> LiveUpdate:
        self._cache.prepend_event(self.filter, event)
        self.events = [event, *self.events]
        self.value = list(self.events)
        self._hash = stable_hash(self.value)
        return LiveUpdate(self.name, self.value, event, fire_trigger=self.spec.triggers is not None)

    async def _rederive(self, event: dict[str, Any]) -> LiveUpdate | None:
        try:
            events = await self._cache.refresh(self.filter, event)
        except TransportError as e:
            logger.warning(f"[live] Re-fetch failed for {self.name}, using known events: {e}")
            events = list(self.events)

        if event.get("id") not in {known.get("id") for known in events}:
            events = [event, *events]

        value = apply_pipe(events, self.spec.pipe)
        digest = stable_hash(value)
        self.events = events
        self._seen.update(known["id"] for known in events if known.get("id"))
        if digest == self._hash:
            logger.debug(f"[live] {self.name} unchanged after event {event.get('id')}")
            return None

        self.value = value
        self._hash = digest
        fire = self.spec.triggers is not None and self.gate.should_fire(value)
        return LiveUpdate(self.name, value, event, fire_trigger=fire)

    def close(self) -> None:
        """Detach from the live subscription. No updates are produced afterwards."""
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._subscription.cancel()
            logger.debug(f"[live] {self.name} closed")
