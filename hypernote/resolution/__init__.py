"""
Hypernote Variable Resolution.

Components:
    - ResolutionContext: per-scope state references resolve against
    - VariableResolver: resolves ``$query``, ``@action``, ``user.*``,
      ``target.*``, ``form.*`` and ``time.now`` references
    - Clock implementations (milliseconds)

Usage:
    context = ResolutionContext(user_pubkey=pubkey)
    resolver = VariableResolver(context)
    filter_ = resolver.resolve_filter({"kinds": [3], "authors": ["user.pubkey"]})
    pending = resolver.find_unresolved(raw_filter)
"""

from .clock import Clock, FixedClock, SystemClock, evaluate_time_expression
from .context import ResolutionContext, action_key, query_key
from .resolver import (
    KEEP,
    MISSING,
    VariableResolver,
    extract_references,
    is_reference,
)

__all__ = [
    "Clock",
    "FixedClock",
    "KEEP",
    "MISSING",
    "ResolutionContext",
    "SystemClock",
    "VariableResolver",
    "action_key",
    "evaluate_time_expression",
    "extract_references",
    "is_reference",
    "query_key",
]
