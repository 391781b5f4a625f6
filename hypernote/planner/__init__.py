"""
Query batching: the two-phase QueryPlanner and the TargetBatcher.
"""

from .batcher import TargetBatcher, TargetContext, parse_target
from .planner import Batch, QueryPlanner, Slot, plan

__all__ = [
    "Batch",
    "QueryPlanner",
    "Slot",
    "TargetBatcher",
    "TargetContext",
    "parse_target",
    "plan",
]
