"""
Action Executor for Hypernote.

Turns a write-action template into a published record.

Flow:
1. Look up the action spec (``not_found``)
2. Put the submitted form data into the context; the template is resolved
   now, not at load time, so counters and ids reflect the latest query state
3. Resolve content (string template, unresolved tokens become "") or the
   JSON template (resolved to raw values, then serialized) and the tags
4. Build ``{kind, content, tags (+["d", d]), created_at (s), pubkey}``
5. Sign through the injected signer (``no_signer`` / ``signing_failed``)
6. Publish through the transport (``publish_failed`` when no endpoint
   accepted the record)
7. Store the record id under ``@name``, invalidate cache entries that
   referenced the previous id or that the new record matches, and notify
   the scope so pending and dependent queries re-run
8. Chained ``triggers`` run through a bounded work queue with loop
   detection (an action never runs twice within one chain)

No error escapes ``execute``: failures come back as an ActionResult with
``record_id=None`` and a short ``reason`` code for the presentation layer.

Usage:
    executor = ActionExecutor(document.events, context, transport, signer, cache)
    result = await executor.execute("@increment", {"amount": 1})
    if result.success:
        print(result.record_id, [r.action for r in result.chained])
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from hypernote.cache import QueryCache
from hypernote.document.models import ActionSpec
from hypernote.errors import (
    ActionError,
    ActionNotFoundError,
    ChainDepthExceededError,
    NoSignerError,
    PublishFailureError,
    SigningError,
    TriggerLoopError,
)
from hypernote.observability import EngineMetrics, ExecutionLogger
from hypernote.resolution import ResolutionContext, VariableResolver, action_key
from hypernote.transports.protocol import Signer, Transport

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHAIN_DEPTH = 3

PublishedHook = Callable[[str, str], Awaitable[None]]


@dataclass
class ActionResult:
    """Outcome of one action, with the outcomes of the actions it chained."""

    action: str
    record_id: str | None = None
    error: str | None = None
    reason: str | None = None
    record: dict[str, Any] | None = field(default=None, repr=False)
    chained: list["ActionResult"] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.record_id is not None

    @classmethod
    def failed(cls, action: str, error: ActionError) -> "ActionResult":
        return cls(action=action, error=str(error), reason=error.reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "record_id": self.record_id,
            "error": self.error,
            "reason": self.reason,
            "chained": [result.to_dict() for result in self.chained],
        }


def _tag_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"))
    return "" if value is None else str(value)


class ActionExecutor:
    """
    Executes the actions of one document scope.

    Args:
        actions: Named action specs (``@name`` keys)
        context: The scope's resolution context
        transport: Publishes signed records
        signer: Signs unsigned records; None means actions fail with ``no_signer``
        cache: Shared query cache to invalidate after publishing
        max_chain_depth: Maximum number of chained actions after the first
        on_published: Awaited with ``(action, record_id)`` after each publish
    """

    def __init__(
        self,
        actions: Mapping[str, ActionSpec],
        context: ResolutionContext,
        transport: Transport,
        signer: Signer | None,
        cache: QueryCache | None = None,
        *,
        max_chain_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
        on_published: PublishedHook | None = None,
        metrics: EngineMetrics | None = None,
        log: ExecutionLogger | None = None,
    ):
        self.actions: dict[str, ActionSpec] = {action_key(name): spec for name, spec in actions.items()}
        self.context = context
        self._transport = transport
        self._signer = signer
        self._cache = cache
        self.max_chain_depth = max_chain_depth
        self._on_published = on_published
        self._metrics = metrics or EngineMetrics()
        self._log = log or ExecutionLogger(scope_id=context.scope_id)

    async def execute(self, name: str, form_data: dict[str, Any] | None = None) -> ActionResult:
        """
        Run an action and whatever it triggers.

        Never raises; see ActionResult.reason for failures.
        """
        name = action_key(name)
        root: ActionResult | None = None
        # (action, form data, chain of actions that led here, parent result)
        queue: deque[tuple[str, dict[str, Any], tuple[str, ...], ActionResult | None]] = deque(
            [(name, form_data or {}, (), None)]
        )

        while queue:
            current, form, chain, parent = queue.popleft()
            result = await self._execute_safely(current, form)
            if parent is None:
                root = result
            else:
                parent.chained.append(result)

            if not result.success:
                continue
            spec = self.actions[current]
            if spec.triggers is None:
                continue

            next_chain = (*chain, current)
            if spec.triggers in next_chain:
                error: ActionError = TriggerLoopError(spec.triggers, next_chain)
                logger.warning(f"[actions] {error}")
                result.chained.append(ActionResult.failed(spec.triggers, error))
            elif len(next_chain) > self.max_chain_depth:
                error = ChainDepthExceededError(spec.triggers, self.max_chain_depth)
                logger.warning(f"[actions] {error}")
                result.chained.append(ActionResult.failed(spec.triggers, error))
            else:
                logger.debug(f"[actions] {current} triggers {spec.triggers}")
                queue.append((spec.triggers, {}, next_chain, result))

        return root

    async def _execute_safely(self, name: str, form_data: dict[str, Any]) -> ActionResult:
        try:
            return await self._execute_one(name, form_data)
        except ActionError as e:
            self._metrics.record_action(success=False)
            self._log.action_failed(name, e.reason, str(e))
            return ActionResult.failed(name, e)
        except Exception as e:
            self._metrics.record_action(success=False)
            logger.error(f"[actions] Unexpected error in {name}: {e}", exc_info=True)
            self._log.action_failed(name, ActionError.reason, str(e))
            return ActionResult(action=name, error=str(e), reason=ActionError.reason)

    def build_record(self, spec: ActionSpec) -> dict[str, Any]:
        """Resolve an action template into an unsigned record."""
        resolver = VariableResolver(self.context)
        if spec.json_ is not None:
            content = json.dumps(resolver.resolve(spec.json_, missing=""), separators=(",", ":"))
        else:
            resolved = resolver.resolve(spec.content or "", missing="")
            content = resolved if isinstance(resolved, str) else _tag_value(resolved)

        tags = [
            [_tag_value(item) for item in resolver.resolve(tag, missing="")]
            for tag in spec.tags
        ]
        if spec.d is not None:
            tags.append(["d", _tag_value(resolver.resolve(spec.d, missing=""))])

        return {
            "kind": spec.kind,
            "content": content,
            "tags": tags,
            "created_at": self.context.time_now // 1000,
            "pubkey": self.context.user_pubkey or "",
        }

    async def _execute_one(self, name: str, form_data: dict[str, Any]) -> ActionResult:
        spec = self.actions.get(name)
        if spec is None:
            raise ActionNotFoundError(name)
        if self._signer is None:
            raise NoSignerError(name)

        # form.* is the form submitted with this invocation only
        self.context.form_data = dict(form_data)
        unsigned = self.build_record(spec)

        try:
            signed = await self._signer.sign(unsigned)
        except Exception as e:
            raise SigningError(name, str(e)) from e

        try:
            published = await self._transport.publish(signed)
        except Exception as e:
            raise PublishFailureError(name, str(e)) from e
        if published.success_count <= 0:
            raise PublishFailureError(name, "no endpoint accepted the record")

        record_id = published.id or signed.get("id")
        previous = self.context.get_action_result(name)
        self.context.set_action_result(name, record_id)

        if self._cache is not None:
            dropped = 0
            if previous:
                dropped += self._cache.invalidate_referencing(previous)
            dropped += self._cache.invalidate_matching(signed)
            logger.debug(f"[actions] {name} invalidated {dropped} cache entries")

        self._metrics.record_action(success=True)
        self._log.action_published(name, record_id, spec.kind)
        logger.info(f"[actions] Published {name} as {record_id}")

        if self._on_published is not None:
            try:
                await self._on_published(name, record_id)
            except Exception as e:
                logger.error(f"[actions] Post-publish refresh failed for {name}: {e}")

        return ActionResult(action=name, record_id=record_id, record=signed)
