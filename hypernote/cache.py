"""
Query Cache for Hypernote.

Deduplicates identical fetches across every document scope in the process.

Design Principle:
    - The cache is a SERVICE, constructed once and passed to every scope;
      it is never a module-level global
    - Entries are keyed by the canonical filter, not by scope, so sharing
      across scopes is safe
    - Concurrent callers with the same filter share one in-flight fetch

Failure Mode (Graceful Degradation):
    - Timeout: the caller gets an empty result, nothing is cached
    - Transport error: TransportError is raised, nothing is cached, so
      the next call retries

Every mutation is a single dict assignment or deletion with no ``await``
in between, so readers never observe a half-updated entry.

Usage:
    cache = QueryCache(transport.fetch, ttl=60)
    events = await cache.get_or_fetch({"kinds": [1], "limit": 20})

    cache.prepend_event(filter_, new_event)     # live append
    await cache.refresh(filter_, new_event)      # live re-fetch, shared by scopes
    cache.invalidate_matching(published_record)  # after a publish
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from cachetools import TTLCache

from hypernote.errors import TransportError
from hypernote.filters import canonical_filter_key, matches_filter, references_value
from hypernote.observability import EngineMetrics

logger = logging.getLogger(__name__)

Fetcher = Callable[[dict[str, Any]], Awaitable[list[dict[str, Any]]]]

DEFAULT_TTL = 60.0  # seconds
DEFAULT_MAX_ENTRIES = 1024
DEFAULT_FETCH_TIMEOUT = 10.0  # seconds


@dataclass(frozen=True)
class CacheEntry:
    """A completed fetch. Replaced wholesale on every change."""

    filter_key: str
    filter: dict[str, Any]
    events: tuple[dict[str, Any], ...]
    timestamp: float

    @property
    def event_ids(self) -> set[str]:
        return {event.get("id") for event in self.events}


class QueryCache:
    """
    TTL-bounded cache of fetch results with in-flight sharing.

    Args:
        fetcher: Coroutine function performing the actual fetch
        ttl: Entry lifetime in seconds
        max_entries: Maximum number of cached filters (LRU beyond that)
        fetch_timeout: Upper bound on one fetch in seconds
        timer: Monotonic clock in seconds (injectable for tests)
        metrics: Counters to update
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        ttl: float = DEFAULT_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        timer: Callable[[], float] = time.monotonic,
        metrics: EngineMetrics | None = None,
    ):
        self._fetcher = fetcher
        self.ttl = ttl
        self.max_entries = max_entries
        self.fetch_timeout = fetch_timeout
        self._timer = timer
        self._metrics = metrics or EngineMetrics()
        self._entries: TTLCache[str, CacheEntry] = TTLCache(
            maxsize=max_entries, ttl=ttl, timer=timer
        )
        # Invalidation detaches the task, so a fetch started earlier cannot repopulate
        self._inflight: dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def get_or_fetch(self, filter_: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Return cached events for ``filter_`` or fetch them.

        Raises:
            TransportError: the fetch failed (not cached)
        """
        key = canonical_filter_key(filter_)

        entry = self._entries.get(key)
        if entry is not None:
            self._metrics.record_cache(hit=True)
            return list(entry.events)

        task = self._inflight.get(key)
        if task is None:
            self._metrics.record_cache(hit=False)
            task = self._start_fetch(key, filter_)
        else:
            self._metrics.inflight_joins += 1
            logger.debug(f"[query_cache] Joining in-flight fetch for {key}")

        # Shielded: one caller's cancellation must not abort the shared fetch
        events = await asyncio.shield(task)
        return list(events)

    async def refresh(self, filter_: dict[str, Any], event: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Re-fetch ``filter_`` after the live ``event`` arrived.

        One re-fetch per filter and event serves every scope: a cached entry
        that already holds the event is returned as is, and an in-flight
        fetch is joined when its result holds the event. The stored result
        always includes ``event``, even when the relay has not indexed it.

        Raises:
            TransportError: the re-fetch failed (nothing cached)
        """
        key = canonical_filter_key(filter_)
        event_id = event.get("id")

        entry = self._entries.get(key)
        if entry is not None and event_id in entry.event_ids:
            self._metrics.record_cache(hit=True)
            return list(entry.events)

        task = self._inflight.get(key)
        if task is not None:
            self._metrics.inflight_joins += 1
            events = await asyncio.shield(task)
            if any(known.get("id") == event_id for known in events):
                return list(events)

        # Anything in flight now predates the event
        self._invalidate_key(key)
        self._metrics.record_cache(hit=False)
        logger.debug(f"[query_cache] Refreshing {key} for live event {event_id}")
        events = await asyncio.shield(self._start_fetch(key, filter_, include=event))
        return list(events)

    def _start_fetch(
        self, key: str, filter_: dict[str, Any], include: dict[str, Any] | None = None
    ) -> asyncio.Task:
        task = asyncio.ensure_future(self._fetch(key, filter_, include))
        self._inflight[key] = task
        task.add_done_callback(lambda t, key=key: self._fetch_done(key, t))
        return task

    async def _fetch(
        self, key: str, filter_: dict[str, Any], include: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        try:
            events = await asyncio.wait_for(self._fetcher(filter_), timeout=self.fetch_timeout)
        except TimeoutError:
            self._metrics.record_fetch(timed_out=True)
            logger.warning(
                f"[query_cache] Fetch timed out after {self.fetch_timeout}s; "
                f"returning empty result for {key}"
            )
            return []
        except Exception as e:
            self._metrics.record_fetch(failed=True)
            logger.error(f"[query_cache] Fetch failed for {key}: {e}")
            raise TransportError("fetch", str(e)) from e

        self._metrics.record_fetch()
        events = list(events or [])
        if include is not None and include.get("id") not in {known.get("id") for known in events}:
            events.insert(0, include)
        if self._inflight.get(key) is asyncio.current_task():
            self._entries[key] = CacheEntry(key, dict(filter_), tuple(events), self._timer())
        return events

    def _fetch_done(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers still receive it
            task.exception()

    # -------------------------------------------------------------------------
    # Direct access
    # -------------------------------------------------------------------------

    def peek(self, filter_: dict[str, Any]) -> list[dict[str, Any]] | None:
        """Cached events without fetching, or None."""
        entry = self._entries.get(canonical_filter_key(filter_))
        return None if entry is None else list(entry.events)

    def set(self, filter_: dict[str, Any], events: list[dict[str, Any]]) -> None:
        key = canonical_filter_key(filter_)
        self._entries[key] = CacheEntry(key, dict(filter_), tuple(events), self._timer())

    def prepend_event(self, filter_: dict[str, Any], event: dict[str, Any]) -> bool:
        """
        Put a live event at the front of a cached result.

        Returns False when nothing is cached for the filter or the event id
        is already present.
        """
        key = canonical_filter_key(filter_)
        entry = self._entries.get(key)
        if entry is None or event.get("id") in entry.event_ids:
            return False
        self._entries[key] = CacheEntry(key, entry.filter, (event, *entry.events), self._timer())
        return True

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def invalidate(self, filter_: dict[str, Any]) -> bool:
        """Drop the entry and detach any in-flight fetch for ``filter_``."""
        return self._invalidate_key(canonical_filter_key(filter_))

    def _invalidate_key(self, key: str) -> bool:
        self._inflight.pop(key, None)
        return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        """Drop every entry the predicate selects. Returns the number dropped."""
        self._entries.expire()
        keys = [key for key, entry in list(self._entries.items()) if predicate(entry)]
        for key in keys:
            self._invalidate_key(key)
        if keys:
            logger.debug(f"[query_cache] Invalidated {len(keys)} entries")
        return len(keys)

    def invalidate_matching(self, record: dict[str, Any]) -> int:
        """Drop entries whose filter would select ``record``."""
        return self.invalidate_where(lambda entry: matches_filter(record, entry.filter))

    def invalidate_referencing(self, value: Any) -> int:
        """Drop entries whose filter mentions ``value`` (e.g. a superseded record id)."""
        return self.invalidate_where(lambda entry: references_value(entry.filter, value))

    def cleanup(self) -> int:
        """Evict expired entries. Returns the number evicted."""
        return len(self._entries.expire())

    def clear(self) -> None:
        for key in list(self._entries.keys()):
            self._invalidate_key(key)
        self._inflight.clear()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, filter_: dict[str, Any]) -> bool:
        return canonical_filter_key(filter_) in self._entries

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "inflight": len(self._inflight),
            "ttl": self.ttl,
            "max_entries": self.max_entries,
            "hits": self._metrics.cache_hits,
            "misses": self._metrics.cache_misses,
        }
