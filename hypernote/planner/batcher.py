"""
Target Batcher for Hypernote.

Resolves the ``target`` of nested component instances: a profile (kind 0
component) or a record (kind 1 component). Sibling instances usually ask
for many different targets at once, so lookups requested within one
event-loop tick are collected into a single fetch per lookup type, and
results are kept in a short-lived TTL cache so repeated lookups for the
same identity resolve without another fetch.

Failure Mode (Graceful Degradation):
    - Missing or malformed profile: minimal target ``{pubkey, raw}``, cached
    - Fetch failure: minimal targets, NOT cached, so a later lookup retries

Usage:
    batcher = TargetBatcher(transport.fetch, ttl=300)
    alice, bob = await asyncio.gather(
        batcher.get_profile(alice_pubkey),
        batcher.get_profile(bob_pubkey),
    )   # one fetch: {"kinds": [0], "authors": [alice, bob]}
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from cachetools import TTLCache

from hypernote.observability import EngineMetrics

logger = logging.getLogger(__name__)

Fetcher = Callable[[dict[str, Any]], Awaitable[list[dict[str, Any]]]]

HEX_64 = re.compile(r"^[0-9a-f]{64}$")
PROFILE_FIELDS = ("name", "picture", "nip05", "about")

DEFAULT_TARGET_TTL = 300.0  # seconds
DEFAULT_MAX_TARGETS = 1024


@dataclass(frozen=True)
class TargetContext:
    """Resolved profile or record a nested component scope renders against."""

    raw: str
    pubkey: str | None = None
    id: str | None = None
    kind: int | None = None
    name: str | None = None
    picture: str | None = None
    nip05: str | None = None
    about: str | None = None
    content: str | None = None
    tags: list[list[str]] | None = field(default=None, hash=False)
    created_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Context form; unset fields are omitted."""
        return {key: value for key, value in asdict(self).items() if value is not None}


def profile_from_event(pubkey: str, event: dict[str, Any] | None) -> TargetContext:
    """Build a profile target from a kind-0 event (minimal when malformed)."""
    if event is None:
        return TargetContext(raw=pubkey, pubkey=pubkey)
    try:
        metadata = json.loads(event.get("content") or "")
    except (TypeError, ValueError):
        logger.debug(f"[target_batcher] Malformed profile content for {pubkey}")
        metadata = None
    if not isinstance(metadata, dict):
        return TargetContext(raw=pubkey, pubkey=pubkey)

    values = {key: metadata.get(key) for key in PROFILE_FIELDS}
    if not values["name"]:
        values["name"] = metadata.get("display_name")
    return TargetContext(
        raw=pubkey,
        pubkey=pubkey,
        kind=0,
        created_at=event.get("created_at"),
        **{key: value if isinstance(value, str) else None for key, value in values.items()},
    )


def record_from_event(record_id: str, event: dict[str, Any] | None) -> TargetContext:
    if event is None:
        return TargetContext(raw=record_id, id=record_id)
    return TargetContext(
        raw=record_id,
        id=record_id,
        pubkey=event.get("pubkey"),
        kind=event.get("kind"),
        content=event.get("content"),
        tags=event.get("tags"),
        created_at=event.get("created_at"),
    )


class _Lookup:
    """Tick-batched lookups of one type (profiles or records)."""

    def __init__(
        self,
        label: str,
        fetcher: Fetcher,
        build_filter: Callable[[list[str]], dict[str, Any]],
        key_of: Callable[[dict[str, Any]], str | None],
        parse: Callable[[str, dict[str, Any] | None], TargetContext],
        cache: TTLCache,
        fetch_timeout: float,
        metrics: EngineMetrics,
    ):
        self.label = label
        self._fetcher = fetcher
        self._build_filter = build_filter
        self._key_of = key_of
        self._parse = parse
        self.cache = cache
        self._fetch_timeout = fetch_timeout
        self._metrics = metrics
        self._waiting: dict[str, list[asyncio.Future]] = {}
        self._scheduled = False
        self._tasks: set[asyncio.Task] = set()

    async def get(self, key: str) -> TargetContext:
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._waiting.setdefault(key, []).append(future)
        if not self._scheduled:
            self._scheduled = True
            loop.call_soon(self._flush)
        return await future

    def _flush(self) -> None:
        self._scheduled = False
        waiting, self._waiting = self._waiting, {}
        if waiting:
            task = asyncio.ensure_future(self._run(waiting))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, waiting: dict[str, list[asyncio.Future]]) -> None:
        keys = list(waiting)
        filter_ = self._build_filter(keys)
        logger.debug(f"[target_batcher] Fetching {len(keys)} {self.label}")
        try:
            events = await asyncio.wait_for(self._fetcher(filter_), timeout=self._fetch_timeout)
            cacheable = True
            self._metrics.record_fetch()
        except Exception as e:
            logger.warning(f"[target_batcher] {self.label} lookup failed, using minimal targets: {e}")
            self._metrics.record_fetch(failed=True, timed_out=isinstance(e, TimeoutError))
            events = []
            cacheable = False

        # Latest event per key wins
        latest: dict[str, dict[str, Any]] = {}
        for event in events or []:
            key = self._key_of(event)
            if key not in waiting:
                continue
            current = latest.get(key)
            if current is None or event.get("created_at", 0) > current.get("created_at", 0):
                latest[key] = event

        for key, futures in waiting.items():
            target = self._parse(key, latest.get(key))
            if cacheable:
                self.cache[key] = target
            for future in futures:
                if not future.done():
                    future.set_result(target)


class TargetBatcher:
    """
    Batched, cached profile and record lookups for component targets.

    Args:
        fetcher: Coroutine function performing the fetch
        ttl: Lifetime of a resolved target in seconds
        max_entries: Maximum number of cached targets per type
        timer: Monotonic clock in seconds (injectable for tests)
        fetch_timeout: Upper bound on one lookup fetch in seconds
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        ttl: float = DEFAULT_TARGET_TTL,
        max_entries: int = DEFAULT_MAX_TARGETS,
        timer: Callable[[], float] = time.monotonic,
        fetch_timeout: float = 10.0,
        metrics: EngineMetrics | None = None,
    ):
        metrics = metrics or EngineMetrics()
        self._profiles = _Lookup(
            "profiles",
            fetcher,
            lambda pubkeys: {"kinds": [0], "authors": pubkeys},
            lambda event: event.get("pubkey"),
            profile_from_event,
            TTLCache(maxsize=max_entries, ttl=ttl, timer=timer),
            fetch_timeout,
            metrics,
        )
        self._records = _Lookup(
            "records",
            fetcher,
            lambda ids: {"ids": ids},
            lambda event: event.get("id"),
            record_from_event,
            TTLCache(maxsize=max_entries, ttl=ttl, timer=timer),
            fetch_timeout,
            metrics,
        )

    async def get_profile(self, pubkey: str) -> TargetContext:
        return await self._profiles.get(pubkey)

    async def get_record(self, record_id: str) -> TargetContext:
        return await self._records.get(record_id)

    def clear(self) -> None:
        self._profiles.cache.clear()
        self._records.cache.clear()

    def stats(self) -> dict[str, int]:
        return {
            "profiles_cached": len(self._profiles.cache),
            "records_cached": len(self._records.cache),
        }


async def parse_target(
    value: Any,
    expected_kind: int | None,
    batcher: TargetBatcher | None = None,
) -> dict[str, Any]:
    """
    Turn a component argument into a target context.

    64-hex values are looked up as a pubkey (kind 0) or record id (kind 1);
    anything else is kept as given: ``{pubkey, raw}`` for profiles,
    ``{raw}`` otherwise. Dicts are taken as already-resolved targets.
    """
    if isinstance(value, TargetContext):
        return value.to_dict()
    if isinstance(value, dict):
        return dict(value)

    text = str(value).strip()
    if batcher is not None and HEX_64.match(text):
        if expected_kind == 0:
            return (await batcher.get_profile(text)).to_dict()
        if expected_kind == 1:
            return (await batcher.get_record(text)).to_dict()

    if expected_kind == 0:
        return {"pubkey": text, "raw": text}
    if expected_kind == 1 and HEX_64.match(text):
        return {"id": text, "raw": text}
    return {"raw": text}
