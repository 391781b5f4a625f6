"""
Configuration Schemas for Hypernote.

Engine settings are plain data. They are read once per process by
``get_settings()`` and passed explicitly to the engine, never looked up
from inside the engine's components.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class EngineSettings(BaseModel):
    """
    Engine settings model.

    Every field can be overridden with a ``HYPERNOTE_<FIELD>`` environment
    variable (see ``get_settings``).
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Query cache
    cache_ttl_seconds: float = Field(60.0, gt=0, description="Lifetime of a cached fetch result")
    cache_max_entries: int = Field(1024, ge=1, description="Maximum cached filters")
    fetch_timeout_seconds: float = Field(
        10.0, gt=0, description="Upper bound on one transport fetch"
    )

    # Planner
    planner_debounce_seconds: float = Field(
        0.05, ge=0, description="Quiet period after the last registration before a batch runs"
    )
    target_cache_ttl_seconds: float = Field(
        300.0, gt=0, description="Lifetime of resolved profile/record targets"
    )

    # Actions
    max_chain_depth: int = Field(3, ge=0, description="Maximum triggered actions per invocation")

    # Live updates
    fire_initial_triggers: bool = Field(
        True, description="Fire query triggers for the result of the first pass"
    )
    live_updates: bool = Field(True, description="Keep query results live after the first pass")
