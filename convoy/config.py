"""
convoy.config - Runtime configuration.

Resolution order (highest priority first):
  1. Explicit keyword overrides passed to :meth:`ConvoyConfig.from_env`
  2. Environment variables (``CONVOY_*``, ``<PROVIDER>_API_KEY``, ...)
  3. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from convoy.errors import ConfigurationError, register_secret

logger = logging.getLogger("convoy.config")

DEFAULT_CATALOG_URL = "https://models.dev/api.json"
DEFAULT_CATALOG_MAX_AGE = 3600.0   # one hour
DEFAULT_MAX_TOOL_DEPTH = 25        # safety limit for tool loops
DEFAULT_TOOL_TIMEOUT = 60.0
DEFAULT_REQUEST_TIMEOUT = 180.0

# Environment variables that hold each provider's API key, in lookup order.
# Providers not listed fall back to ``<PROVIDER>_API_KEY``.
API_KEY_ENV: dict[str, tuple[str, ...]] = {
    "claude": ("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "openai": ("OPENAI_API_KEY",),
    "azure-openai": ("AZURE_OPENAI_API_KEY",),
    "ollama": (),
    "lmstudio": (),
}

BASE_URL_ENV: dict[str, tuple[str, ...]] = {
    "ollama": ("OLLAMA_HOST", "OLLAMA_BASE_URL"),
}


def _env_name(provider: str, suffix: str) -> str:
    return f"{provider.upper().replace('-', '_')}_{suffix}"


def _env_bool(name: str) -> bool | None:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


class ProviderSettings(BaseModel):
    """Connection settings handed to one provider adapter."""
    api_key: str = ""
    base_url: str = ""
    timeout: float = DEFAULT_REQUEST_TIMEOUT

    def __repr__(self) -> str:
        masked = "***" if self.api_key else ""
        return f"ProviderSettings(api_key={masked!r}, base_url={self.base_url!r}, timeout={self.timeout})"

    __str__ = __repr__


class ConvoyConfig(BaseModel):
    """Runtime configuration for the completion engine."""
    catalog_url: str = DEFAULT_CATALOG_URL
    catalog_max_age: float = DEFAULT_CATALOG_MAX_AGE
    max_tool_depth: int = DEFAULT_MAX_TOOL_DEPTH
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    parallel_tools: bool = False
    stream: bool = True
    log_level: str = "WARNING"
    log_filter: str = "convoy"

    api_keys: dict[str, str] = Field(default_factory=dict, repr=False)
    base_urls: dict[str, str] = Field(default_factory=dict)

    @field_validator("catalog_max_age", "tool_timeout", "request_timeout")
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be a positive number of seconds")
        return value

    @field_validator("max_tool_depth")
    @classmethod
    def _positive_depth(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level '{value}'")
        return level

    @classmethod
    def from_env(cls, **overrides: Any) -> "ConvoyConfig":
        """Build a config from environment variables plus explicit overrides."""
        values: dict[str, Any] = {}
        env_map = {
            "catalog_url": "CONVOY_CATALOG_URL",
            "catalog_max_age": "CONVOY_CATALOG_MAX_AGE",
            "max_tool_depth": "CONVOY_MAX_TOOL_DEPTH",
            "tool_timeout": "CONVOY_TOOL_TIMEOUT",
            "request_timeout": "CONVOY_REQUEST_TIMEOUT",
            "log_level": "CONVOY_LOG_LEVEL",
            "log_filter": "CONVOY_LOG_FILTER",
        }
        for field_name, env_var in env_map.items():
            raw = os.getenv(env_var)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()

        for field_name, env_var in (("parallel_tools", "CONVOY_PARALLEL_TOOLS"), ("stream", "CONVOY_STREAM")):
            flag = _env_bool(env_var)
            if flag is not None:
                values[field_name] = flag

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise ConfigurationError(
                f"Invalid configuration: {problems}",
                hint="Check the CONVOY_* environment variables.",
            ) from exc

    # ------------------------------------------------------------------
    # Per-provider settings
    # ------------------------------------------------------------------

    def api_key_for(self, provider: str) -> str:
        if provider in self.api_keys:
            return self.api_keys[provider]
        names = API_KEY_ENV.get(provider, (_env_name(provider, "API_KEY"),))
        for name in names:
            value = os.getenv(name, "")
            if value:
                return value
        return ""

    def base_url_for(self, provider: str) -> str:
        if provider in self.base_urls:
            return self.base_urls[provider]
        for name in (_env_name(provider, "BASE_URL"), *BASE_URL_ENV.get(provider, ())):
            value = os.getenv(name, "")
            if value:
                return value
        return ""

    def provider_settings(self, provider: str) -> ProviderSettings:
        api_key = self.api_key_for(provider)
        register_secret(api_key)
        return ProviderSettings(
            api_key=api_key,
            base_url=self.base_url_for(provider),
            timeout=self.request_timeout,
        )
