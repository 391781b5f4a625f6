"""
Subscription Manager for Hypernote.

Keeps exactly one transport-level live subscription per canonical filter
and multiplexes it to every listener that asked for that filter.

Lifecycle:
1. First ``ensure_subscription`` for a filter opens the transport
   subscription; later callers attach to it
2. Events are delivered to listeners in registration order, in the
   order the transport delivered them
3. ``Subscription.cancel()`` detaches one listener; the last one closes
   the transport subscription

A listener that raises is logged and skipped; the other listeners still
receive the event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from hypernote.errors import TransportError
from hypernote.filters import canonical_filter_key
from hypernote.transports.protocol import CancelHandle, EoseCallback, EventCallback, Transport

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Subscription:
    """One listener's handle on a shared live subscription."""

    filter_key: str
    filter: dict[str, Any]
    listener: EventCallback
    on_eose: EoseCallback | None
    _manager: "SubscriptionManager" = field(repr=False)
    _cancelled: bool = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def cancel(self) -> None:
        """Detach this listener. Safe to call more than once."""
        if self._cancelled:
            return
        self._cancelled = True
        self._manager._detach(self)


@dataclass(eq=False)
class _SharedSubscription:
    filter_key: str
    filter: dict[str, Any]
    ready: asyncio.Future
    listeners: list[Subscription] = field(default_factory=list)
    cancel_transport: CancelHandle | None = None
    eose_received: bool = False
    closed: bool = False


class SubscriptionManager:
    """
    Reference-counted live subscriptions shared across document scopes.

    Usage:
        manager = SubscriptionManager(transport)
        sub = await manager.ensure_subscription(filter_, on_event)
        ...
        sub.cancel()
    """

    def __init__(self, transport: Transport):
        self._transport = transport
        self._shared: dict[str, _SharedSubscription] = {}

    async def ensure_subscription(
        self,
        filter_: dict[str, Any],
        on_event: EventCallback,
        on_eose: EoseCallback | None = None,
    ) -> Subscription:
        """
        Attach ``on_event`` to the live subscription for ``filter_``.

        Raises:
            TransportError: the transport refused the subscription
        """
        key = canonical_filter_key(filter_)
        shared = self._shared.get(key)
        opening = shared is None

        if opening:
            loop = asyncio.get_running_loop()
            shared = _SharedSubscription(filter_key=key, filter=dict(filter_), ready=loop.create_future())
            # Registered before the await so concurrent callers attach to it
            self._shared[key] = shared

        handle = Subscription(key, shared.filter, on_event, on_eose, self)
        shared.listeners.append(handle)

        if not opening:
            await asyncio.shield(shared.ready)
            if shared.eose_received and on_eose is not None:
                on_eose()
            return handle

        try:
            cancel = await self._transport.subscribe_live(
                shared.filter,
                lambda event: self._dispatch(shared, event),
                lambda: self._eose(shared),
            )
        except Exception as e:
            if self._shared.get(key) is shared:
                del self._shared[key]
            shared.closed = True
            error = TransportError("subscribe", str(e))
            shared.ready.set_exception(error)
            shared.ready.exception()
            logger.error(f"[subscriptions] Failed to subscribe {key}: {e}")
            raise error from e

        if shared.closed:
            # Every listener left while the transport call was in flight
            self._close_transport(shared, cancel)
        else:
            shared.cancel_transport = cancel
            logger.debug(f"[subscriptions] Opened live subscription {key}")
        shared.ready.set_result(True)
        return handle

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _dispatch(self, shared: _SharedSubscription, event: dict[str, Any]) -> None:
        if shared.closed:
            return
        for handle in list(shared.listeners):
            if not handle.active:
                continue
            try:
                handle.listener(event)
            except Exception as e:
                logger.error(
                    f"[subscriptions] Listener error on {shared.filter_key} "
                    f"for event {event.get('id')}: {e}"
                )

    def _eose(self, shared: _SharedSubscription) -> None:
        shared.eose_received = True
        for handle in list(shared.listeners):
            if handle.active and handle.on_eose is not None:
                try:
                    handle.on_eose()
                except Exception as e:
                    logger.error(f"[subscriptions] EOSE listener error on {shared.filter_key}: {e}")

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def _detach(self, handle: Subscription) -> None:
        shared = self._shared.get(handle.filter_key)
        if shared is None or handle not in shared.listeners:
            return
        shared.listeners.remove(handle)
        if shared.listeners:
            return
        shared.closed = True
        del self._shared[handle.filter_key]
        if shared.cancel_transport is not None:
            self._close_transport(shared, shared.cancel_transport)

    def _close_transport(self, shared: _SharedSubscription, cancel: CancelHandle) -> None:
        try:
            cancel()
            logger.debug(f"[subscriptions] Closed live subscription {shared.filter_key}")
        except Exception as e:
            logger.error(f"[subscriptions] Error closing {shared.filter_key}: {e}")

    def clear(self) -> None:
        """Close every subscription regardless of reference counts."""
        for shared in list(self._shared.values()):
            for handle in list(shared.listeners):
                handle.cancel()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def ref_count(self, filter_: dict[str, Any]) -> int:
        shared = self._shared.get(canonical_filter_key(filter_))
        return len(shared.listeners) if shared else 0

    def active_count(self) -> int:
        """Number of open transport-level subscriptions."""
        return len(self._shared)
