"""
Settings loader.

Reads ``HYPERNOTE_*`` environment variables once per process.
"""

from __future__ import annotations

import os
from functools import lru_cache

from .schemas import EngineSettings

ENV_PREFIX = "HYPERNOTE_"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(f"{ENV_PREFIX}{name}", default).lower() in ("1", "true", "yes")


def load_settings() -> EngineSettings:
    """Build settings from the current environment (uncached)."""
    return EngineSettings(
        cache_ttl_seconds=float(os.getenv(f"{ENV_PREFIX}CACHE_TTL_SECONDS", "60")),
        cache_max_entries=int(os.getenv(f"{ENV_PREFIX}CACHE_MAX_ENTRIES", "1024")),
        fetch_timeout_seconds=float(os.getenv(f"{ENV_PREFIX}FETCH_TIMEOUT_SECONDS", "10")),
        planner_debounce_seconds=float(os.getenv(f"{ENV_PREFIX}PLANNER_DEBOUNCE_SECONDS", "0.05")),
        target_cache_ttl_seconds=float(os.getenv(f"{ENV_PREFIX}TARGET_CACHE_TTL_SECONDS", "300")),
        max_chain_depth=int(os.getenv(f"{ENV_PREFIX}MAX_CHAIN_DEPTH", "3")),
        fire_initial_triggers=_env_bool("FIRE_INITIAL_TRIGGERS", "true"),
        live_updates=_env_bool("LIVE_UPDATES", "true"),
    )


@lru_cache()
def get_settings() -> EngineSettings:
    """
    Get engine settings.

    Uses lru_cache for singleton pattern; call ``get_settings.cache_clear()``
    after changing the environment.
    """
    return load_settings()
