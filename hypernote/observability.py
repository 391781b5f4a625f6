"""
Observability for the Hypernote engine.

Provides structured logging and metrics for execution passes, live
updates and actions.

Design Philosophy:
- Structured logging by default (JSON-formatted, through stdlib logging)
- Metrics are an injected instance owned by the engine, never a global,
  so tests can inspect an isolated instance
- Minimal overhead when nobody reads them
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


# =============================================================================
# Log Levels
# =============================================================================


class LogLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger(Protocol):
    """Loggers that take key-value context instead of formatted strings."""

    def debug(self, message: str, **context: Any) -> None:
        ...

    def info(self, message: str, **context: Any) -> None:
        ...

    def warning(self, message: str, **context: Any) -> None:
        ...

    def error(self, message: str, **context: Any) -> None:
        ...


@dataclass
class JSONLogger:
    """
    Structured logger that emits one JSON object per record.

    Example output:
        {"timestamp": "2026-01-02T10:30:00+00:00", "level": "info",
         "message": "Pass completed", "scope": "3fa1c2", "queries": 4}
    """

    name: str = "hypernote"
    extra_context: dict[str, Any] = field(default_factory=dict)
    _python_logger: logging.Logger = field(init=False)

    def __post_init__(self) -> None:
        self._python_logger = logging.getLogger(self.name)

    def _log(self, level: LogLevel, message: str, context: dict[str, Any]) -> None:
        method = getattr(self._python_logger, level.value)
        if not self._python_logger.isEnabledFor(getattr(logging, level.name)):
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.value,
            "message": message,
            **self.extra_context,
            **context,
        }
        method(json.dumps(record, default=str))

    def debug(self, message: str, **context: Any) -> None:
        self._log(LogLevel.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._log(LogLevel.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(LogLevel.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._log(LogLevel.ERROR, message, context)

    def with_context(self, **extra: Any) -> "JSONLogger":
        """Create a new logger with additional context."""
        return JSONLogger(name=self.name, extra_context={**self.extra_context, **extra})


# =============================================================================
# Execution Logger
# =============================================================================


@dataclass
class ExecutionLogger:
    """
    Lifecycle events of one document scope.

    Example:
        log = ExecutionLogger(scope_id="3fa1c2")
        log.pass_started(queries=["$feed", "$contacts"])
        log.query_completed("$feed", duration_ms=12.5, result_size=20)
        log.pass_completed(duration_ms=40.1, completed=2, pending=0, errors=0)
    """

    scope_id: str
    inner: StructuredLogger | None = None

    def __post_init__(self) -> None:
        if self.inner is None:
            self.inner = JSONLogger(name="hypernote.execution", extra_context={"scope": self.scope_id})

    # Execution passes
    def pass_started(self, queries: list[str]) -> None:
        self.inner.debug("Pass started", queries=queries, query_count=len(queries))

    def pass_completed(
        self, duration_ms: float, completed: int, pending: int, errors: int
    ) -> None:
        self.inner.info(
            "Pass completed",
            duration_ms=round(duration_ms, 2),
            completed=completed,
            pending=pending,
            errors=errors,
        )

    def cycle_detected(self, path: list[str]) -> None:
        self.inner.error("Circular dependency", cycle=path)

    # Queries
    def query_completed(self, name: str, duration_ms: float, result_size: int | None) -> None:
        self.inner.debug(
            "Query completed",
            query=name,
            duration_ms=round(duration_ms, 2),
            result_size=result_size,
        )

    def query_pending(self, name: str, unresolved: list[str]) -> None:
        self.inner.debug("Query pending", query=name, unresolved=unresolved)

    def query_failed(self, name: str, error: str, error_type: str) -> None:
        self.inner.warning("Query failed", query=name, error=error, error_type=error_type)

    # Live updates
    def live_update(self, name: str, event_id: str, changed: bool) -> None:
        self.inner.debug("Live update", query=name, event_id=event_id, changed=changed)

    def duplicate_suppressed(self, name: str, event_id: str) -> None:
        self.inner.debug("Duplicate event suppressed", query=name, event_id=event_id)

    def trigger_fired(self, query: str, action: str) -> None:
        self.inner.info("Trigger fired", query=query, action=action)

    # Actions
    def action_published(self, name: str, record_id: str, kind: int) -> None:
        self.inner.info("Action published", action=name, record_id=record_id, kind=kind)

    def action_failed(self, name: str, reason: str, error: str) -> None:
        self.inner.warning("Action failed", action=name, reason=reason, error=error)


# =============================================================================
# Metrics
# =============================================================================


@dataclass
class EngineMetrics:
    """
    Engine counters.

    Tracks:
    - Transport fetches and cache effectiveness
    - Live update traffic and duplicate suppression
    - Action outcomes
    - Execution pass durations
    """

    # Counters
    fetches_total: int = 0
    fetch_failures: int = 0
    fetch_timeouts: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    inflight_joins: int = 0
    live_updates: int = 0
    live_updates_propagated: int = 0
    duplicates_suppressed: int = 0
    triggers_fired: int = 0
    actions_published: int = 0
    actions_failed: int = 0
    passes_total: int = 0
    batches_executed: int = 0

    # Histograms (simplified as lists)
    pass_durations_ms: list[float] = field(default_factory=list)
    max_histogram_entries: int = 1000

    def record_fetch(self, *, failed: bool = False, timed_out: bool = False) -> None:
        self.fetches_total += 1
        if failed:
            self.fetch_failures += 1
        if timed_out:
            self.fetch_timeouts += 1

    def record_cache(self, hit: bool) -> None:
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

    def record_pass(self, duration_ms: float) -> None:
        self.passes_total += 1
        self.pass_durations_ms.append(duration_ms)
        if len(self.pass_durations_ms) > self.max_histogram_entries:
            del self.pass_durations_ms[: len(self.pass_durations_ms) - self.max_histogram_entries]

    def record_action(self, success: bool) -> None:
        if success:
            self.actions_published += 1
        else:
            self.actions_failed += 1

    def get_stats(self) -> dict[str, Any]:
        """Get summary statistics."""

        def percentile(data: list[float], p: float) -> float | None:
            if not data:
                return None
            ordered = sorted(data)
            k = (len(ordered) - 1) * p
            f = int(k)
            c = min(f + 1, len(ordered) - 1)
            return ordered[f] + (k - f) * (ordered[c] - ordered[f])

        lookups = self.cache_hits + self.cache_misses
        return {
            "fetches": {
                "total": self.fetches_total,
                "failed": self.fetch_failures,
                "timed_out": self.fetch_timeouts,
            },
            "cache": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "inflight_joins": self.inflight_joins,
                "hit_rate": self.cache_hits / lookups if lookups else None,
            },
            "live": {
                "updates": self.live_updates,
                "propagated": self.live_updates_propagated,
                "duplicates_suppressed": self.duplicates_suppressed,
                "triggers_fired": self.triggers_fired,
            },
            "actions": {
                "published": self.actions_published,
                "failed": self.actions_failed,
            },
            "passes": {
                "total": self.passes_total,
                "p50_ms": percentile(self.pass_durations_ms, 0.5),
                "p95_ms": percentile(self.pass_durations_ms, 0.95),
            },
            "batches_executed": self.batches_executed,
        }

    def reset(self) -> None:
        """Reset all metrics."""
        for name in (
            "fetches_total",
            "fetch_failures",
            "fetch_timeouts",
            "cache_hits",
            "cache_misses",
            "inflight_joins",
            "live_updates",
            "live_updates_propagated",
            "duplicates_suppressed",
            "triggers_fired",
            "actions_published",
            "actions_failed",
            "passes_total",
            "batches_executed",
        ):
            setattr(self, name, 0)
        self.pass_durations_ms.clear()


__all__ = [
    "EngineMetrics",
    "ExecutionLogger",
    "JSONLogger",
    "LogLevel",
    "StructuredLogger",
]
