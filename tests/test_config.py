"""Tests for environment-backed configuration."""

import pytest

from citytalk import Config, EngineSettings


def test_engine_settings_from_env(monkeypatch):
    monkeypatch.setattr(Config, "MAX_DAILY_CALLS", 7)
    monkeypatch.setattr(Config, "MAX_CONCURRENT_CONVERSATIONS", 3)
    monkeypatch.setattr(Config, "DEFAULT_DISTRICT", "harbor")

    settings = EngineSettings.from_env()

    assert settings.quota.max_daily_calls == 7
    assert settings.scheduler.max_concurrent_conversations == 3
    assert settings.scheduler.default_district == "harbor"
    assert settings.termination.max_messages == 100


def test_validate_requires_provider_key(monkeypatch):
    monkeypatch.setattr(Config, "LLM_PROVIDER", "openai")
    monkeypatch.setattr(Config, "OPENAI_API_KEY", None)
    with pytest.raises(ValueError, match="OPENAI_API_KEY"):
        Config.validate()

    monkeypatch.setattr(Config, "OPENAI_API_KEY", "sk-test")
    Config.validate()
