"""
Tests for engine settings.
"""

import pytest
from pydantic import ValidationError

from hypernote.config import EngineSettings, get_settings, load_settings


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestEngineSettings:
    """Tests for EngineSettings defaults and validation."""

    def test_defaults(self):
        settings = EngineSettings()

        assert settings.cache_ttl_seconds == 60.0
        assert settings.fetch_timeout_seconds == 10.0
        assert settings.planner_debounce_seconds == 0.05
        assert settings.max_chain_depth == 3
        assert settings.fire_initial_triggers is True
        assert settings.live_updates is True

    def test_rejects_non_positive_ttl(self):
        with pytest.raises(ValidationError):
            EngineSettings(cache_ttl_seconds=0)

    def test_frozen(self):
        settings = EngineSettings()

        with pytest.raises(ValidationError):
            settings.max_chain_depth = 5


class TestLoadSettings:
    """Tests for environment overrides."""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("HYPERNOTE_CACHE_TTL_SECONDS", "5")
        monkeypatch.setenv("HYPERNOTE_MAX_CHAIN_DEPTH", "1")
        monkeypatch.setenv("HYPERNOTE_LIVE_UPDATES", "false")

        settings = load_settings()

        assert settings.cache_ttl_seconds == 5.0
        assert settings.max_chain_depth == 1
        assert settings.live_updates is False

    def test_boolean_spellings(self, monkeypatch):
        monkeypatch.setenv("HYPERNOTE_FIRE_INITIAL_TRIGGERS", "yes")

        assert load_settings().fire_initial_triggers is True

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("HYPERNOTE_MAX_CHAIN_DEPTH", "7")

        assert get_settings() is first
        get_settings.cache_clear()
        assert get_settings().max_chain_depth == 7
