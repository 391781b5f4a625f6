"""
Transport and Signer Protocols for Hypernote.

The engine talks to the event network only through these interfaces.
Connection lifecycle, retries and protocol framing belong to the
transport implementation; the engine treats every call as a black box.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

EventCallback = Callable[[dict[str, Any]], None]
EoseCallback = Callable[[], None]
CancelHandle = Callable[[], None]


@dataclass(frozen=True, slots=True)
class PublishResult:
    """
    Result of publishing a signed record.

    Attributes:
        id: Record identifier
        success_count: Number of endpoints that accepted the record
    """

    id: str
    success_count: int

    @property
    def success(self) -> bool:
        return self.success_count > 0


@runtime_checkable
class Transport(Protocol):
    """
    Event network transport.

    Example implementations:
    - a relay pool speaking the websocket protocol
    - InMemoryTransport (tests)
    """

    async def fetch(self, filter_: dict[str, Any]) -> list[dict[str, Any]]:
        """
        One-shot query for stored events matching ``filter_``.

        Raises:
            Exception: any failure; the engine converts it to TransportError
        """
        ...

    async def subscribe_live(
        self,
        filter_: dict[str, Any],
        on_event: EventCallback,
        on_eose: EoseCallback | None = None,
    ) -> CancelHandle:
        """
        Open a live subscription.

        ``on_event`` is called for every event in arrival order; ``on_eose``
        once stored events have been delivered. Returns a cancel callable.
        """
        ...

    async def publish(self, record: dict[str, Any]) -> PublishResult:
        """Publish a signed record."""
        ...


@runtime_checkable
class Signer(Protocol):
    """Turns an unsigned record into a signed one (id, pubkey, sig)."""

    async def sign(self, unsigned: dict[str, Any]) -> dict[str, Any]:
        ...
