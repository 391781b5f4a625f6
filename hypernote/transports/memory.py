"""
In-memory transport and signer.

Not suitable for production use. They behave like a single well-behaved
relay: stored events are matched against filters, newest first, live
subscribers see every new matching event, and published records are
stored and echoed to live subscribers.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from hypernote.filters import matches_filter

from .protocol import CancelHandle, EoseCallback, EventCallback, PublishResult

logger = logging.getLogger(__name__)

DEFAULT_PUBKEY = "f" * 64


def compute_record_id(record: dict[str, Any]) -> str:
    """Record id: sha256 over ``[0, pubkey, created_at, kind, tags, content]``."""
    payload = json.dumps(
        [
            0,
            record.get("pubkey", ""),
            record.get("created_at", 0),
            record.get("kind", 0),
            record.get("tags", []),
            record.get("content", ""),
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class _LiveSubscription:
    filter: dict[str, Any]
    on_event: EventCallback
    active: bool = True


@dataclass
class InMemoryTransport:
    """
    Transport double with call counters and failure injection.

    Usage:
        transport = InMemoryTransport(events=[...])
        await transport.fetch({"kinds": [1]})
        transport.emit(new_event)            # delivered to live subscribers
        assert transport.fetch_count == 1
    """

    events: list[dict[str, Any]] = field(default_factory=list)
    fetch_delay: float = 0.0
    fetch_error: Exception | None = None
    publish_error: Exception | None = None
    relay_count: int = 1

    fetch_calls: list[dict[str, Any]] = field(default_factory=list)
    subscribe_calls: list[dict[str, Any]] = field(default_factory=list)
    published: list[dict[str, Any]] = field(default_factory=list)
    _subscriptions: list[_LiveSubscription] = field(default_factory=list)

    @property
    def fetch_count(self) -> int:
        return len(self.fetch_calls)

    @property
    def active_subscriptions(self) -> int:
        return sum(1 for sub in self._subscriptions if sub.active)

    def add_events(self, *events: dict[str, Any]) -> None:
        """Store events without notifying live subscribers."""
        self.events.extend(events)

    def query(self, filter_: dict[str, Any]) -> list[dict[str, Any]]:
        """Stored events matching ``filter_``, newest first, limit applied."""
        matched = [event for event in self.events if matches_filter(event, filter_)]
        matched.sort(key=lambda event: event.get("created_at", 0), reverse=True)
        limit = filter_.get("limit")
        if isinstance(limit, int) and limit >= 0:
            matched = matched[:limit]
        return matched

    async def fetch(self, filter_: dict[str, Any]) -> list[dict[str, Any]]:
        self.fetch_calls.append(filter_)
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fetch_error is not None:
            raise self.fetch_error
        return [dict(event) for event in self.query(filter_)]

    async def subscribe_live(
        self,
        filter_: dict[str, Any],
        on_event: EventCallback,
        on_eose: EoseCallback | None = None,
    ) -> CancelHandle:
        self.subscribe_calls.append(filter_)
        subscription = _LiveSubscription(filter=filter_, on_event=on_event)
        self._subscriptions.append(subscription)
        if on_eose is not None:
            on_eose()

        def cancel() -> None:
            subscription.active = False
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return cancel

    def emit(self, event: dict[str, Any], *, store: bool = True) -> int:
        """
        Deliver ``event`` to matching live subscribers.

        Returns the number of subscriptions notified.
        """
        if store:
            self.events.append(event)
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.active and matches_filter(event, subscription.filter):
                subscription.on_event(dict(event))
                delivered += 1
        return delivered

    async def publish(self, record: dict[str, Any]) -> PublishResult:
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append(record)
        if self.relay_count > 0:
            self.emit(record)
        return PublishResult(id=record["id"], success_count=self.relay_count)


@dataclass
class InMemorySigner:
    """
    Signer double: fills in pubkey and a deterministic id, no signature.

    Set ``fail`` to simulate a rejected signing request.
    """

    pubkey: str = DEFAULT_PUBKEY
    fail: bool = False
    signed: list[dict[str, Any]] = field(default_factory=list)

    async def sign(self, unsigned: dict[str, Any]) -> dict[str, Any]:
        if self.fail:
            raise PermissionError("signing request rejected")
        record = {**unsigned, "pubkey": unsigned.get("pubkey") or self.pubkey}
        record["id"] = compute_record_id(record)
        record["sig"] = ""
        self.signed.append(record)
        return record
