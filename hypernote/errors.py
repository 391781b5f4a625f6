"""
Error taxonomy for the Hypernote engine.

Errors fall into two families:

- Query-path errors are contained per query. A CycleError aborts the whole
  execution pass; everything else (unresolved references, transport
  failures) degrades the affected query to an empty result.
- Action-path errors never escape the ActionExecutor. They are converted
  into an ActionResult with record_id=None and a reason code so the
  presentation layer can tell the user what happened.

Pipe operations never raise on shape mismatches; they pass the value
through unchanged instead.
"""

from __future__ import annotations

from collections.abc import Sequence


class HypernoteError(Exception):
    """Base class for all engine errors."""


# =============================================================================
# Query path
# =============================================================================


class CycleError(HypernoteError):
    """
    Raised when query dependencies form a cycle.

    Fatal for the execution pass: the caller receives the full cycle path,
    e.g. ``$a -> $b -> $a``.
    """

    def __init__(self, path: Sequence[str]):
        self.path = tuple(path)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.path)}")

    @property
    def queries(self) -> set[str]:
        """Distinct query names taking part in the cycle."""
        return set(self.path)


class UnresolvedReferenceError(HypernoteError):
    """
    A query filter still contains symbolic references after resolution.

    Recoverable: the query is reported pending and retried on a later pass.
    """

    def __init__(self, query_name: str, references: Sequence[str]):
        self.query_name = query_name
        self.references = tuple(references)
        super().__init__(
            f"Query {query_name} has unresolved references: {', '.join(self.references)}"
        )


class TransportError(HypernoteError):
    """A fetch, subscribe or publish call on the transport failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"[{operation}] {message}")


# =============================================================================
# Action path
# =============================================================================


class ActionError(HypernoteError):
    """Base class for action failures. ``reason`` is a stable short code."""

    reason = "action_failed"

    def __init__(self, action_name: str, message: str):
        self.action_name = action_name
        super().__init__(f"{action_name}: {message}")


class ActionNotFoundError(ActionError):
    reason = "not_found"

    def __init__(self, action_name: str):
        super().__init__(action_name, "action not found")


class NoSignerError(ActionError):
    reason = "no_signer"

    def __init__(self, action_name: str):
        super().__init__(action_name, "no signer available")


class SigningError(ActionError):
    reason = "signing_failed"


class PublishFailureError(ActionError):
    reason = "publish_failed"


class ChainDepthExceededError(ActionError):
    reason = "chain_depth_exceeded"

    def __init__(self, action_name: str, max_depth: int):
        self.max_depth = max_depth
        super().__init__(action_name, f"trigger chain deeper than {max_depth}")


class TriggerLoopError(ActionError):
    reason = "trigger_loop"

    def __init__(self, action_name: str, chain: Sequence[str]):
        self.chain = tuple(chain)
        super().__init__(
            action_name, f"trigger loop detected: {' -> '.join((*self.chain, action_name))}"
        )


class ScopeClosedError(ActionError):
    reason = "scope_closed"

    def __init__(self, action_name: str, scope_id: str):
        self.scope_id = scope_id
        super().__init__(action_name, f"scope {scope_id} is closed")
