"""Tests for environment-driven configuration."""

from __future__ import annotations

import pytest

from convoy.config import DEFAULT_MAX_TOOL_DEPTH, ConvoyConfig
from convoy.errors import ConfigurationError, redact


def test_defaults():
    config = ConvoyConfig.from_env()
    assert config.max_tool_depth == DEFAULT_MAX_TOOL_DEPTH
    assert config.stream is True
    assert config.parallel_tools is False
    assert config.catalog_url == "https://models.dev/api.json"
    assert config.log_level == "WARNING"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CONVOY_MAX_TOOL_DEPTH", "5")
    monkeypatch.setenv("CONVOY_TOOL_TIMEOUT", "2.5")
    monkeypatch.setenv("CONVOY_PARALLEL_TOOLS", "yes")
    monkeypatch.setenv("CONVOY_STREAM", "0")
    monkeypatch.setenv("CONVOY_LOG_LEVEL", "debug")

    config = ConvoyConfig.from_env()
    assert config.max_tool_depth == 5
    assert config.tool_timeout == 2.5
    assert config.parallel_tools is True
    assert config.stream is False
    assert config.log_level == "DEBUG"


def test_explicit_overrides_beat_environment(monkeypatch):
    monkeypatch.setenv("CONVOY_MAX_TOOL_DEPTH", "5")
    assert ConvoyConfig.from_env(max_tool_depth=9).max_tool_depth == 9


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("CONVOY_MAX_TOOL_DEPTH", "0"),
        ("CONVOY_MAX_TOOL_DEPTH", "many"),
        ("CONVOY_TOOL_TIMEOUT", "-1"),
        ("CONVOY_LOG_LEVEL", "LOUD"),
    ],
)
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        ConvoyConfig.from_env()


class TestProviderSettings:
    def test_api_key_lookup_order(self, monkeypatch):
        monkeypatch.setenv("CLAUDE_API_KEY", "from-claude-var")
        assert ConvoyConfig().api_key_for("claude") == "from-claude-var"
        monkeypatch.setenv("ANTHROPIC_API_KEY", "from-anthropic-var")
        assert ConvoyConfig().api_key_for("claude") == "from-anthropic-var"

    def test_generic_key_variable(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "ds-key")
        assert ConvoyConfig().api_key_for("deepseek") == "ds-key"

    def test_explicit_keys_win(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "env-key")
        assert ConvoyConfig(api_keys={"openai": "explicit"}).api_key_for("openai") == "explicit"

    def test_ollama_host(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_HOST", "http://gpu-box:11434")
        settings = ConvoyConfig().provider_settings("ollama")
        assert settings.base_url == "http://gpu-box:11434"
        assert settings.api_key == ""

    def test_settings_register_key_for_redaction(self):
        secret = "sk-registered-9f8e7d"
        settings = ConvoyConfig(api_keys={"openai": secret}, request_timeout=12).provider_settings("openai")
        assert settings.timeout == 12
        assert secret not in repr(settings)
        assert redact(f"header Bearer {secret}") == "header Bearer ***"
