"""
Hypernote Pipe Engine.

Pure, stateless transformations applied to query results.

Usage:
    from hypernote.pipes import apply_pipe, parse_pipe

    ops = parse_pipe([{"op": "pluck", "field": "pubkey"}, "unique"])
    authors = apply_pipe(events, ops)
"""

from .engine import apply_pipe, operation, registered_operations
from .operations import PipeOp, dump_pipe, parse_pipe
from .shapes import get_path, is_empty, is_record_collection

__all__ = [
    "PipeOp",
    "apply_pipe",
    "dump_pipe",
    "get_path",
    "is_empty",
    "is_record_collection",
    "operation",
    "parse_pipe",
    "registered_operations",
]
