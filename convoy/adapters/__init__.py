"""
convoy.adapters - LLM provider adapter registry.

Provides a ``create_adapter()`` factory that picks the adapter family for a
provider key once; nothing downstream branches on provider identity.

Supported families:
    - ``claude``    Anthropic Messages API
    - ``openai``    OpenAI Chat Completions
    - ``gemini``    Google Gemini generateContent
    - ``ollama``    Ollama native /api/chat (local)
    - ``lmstudio``  LM Studio's local OpenAI-compatible server
    - any other provider speaking Chat Completions, given a base URL
"""

from __future__ import annotations

from convoy.adapters.base import ProviderAdapter, RawEvent, WireRequest
from convoy.config import ProviderSettings
from convoy.errors import ConfigurationError


# ---- Family and default endpoint per provider ----------------------------
PROVIDER_DEFAULTS: dict[str, dict[str, str]] = {
    "claude": {"family": "claude", "base_url": "https://api.anthropic.com"},
    "openai": {"family": "openai", "base_url": "https://api.openai.com/v1"},
    "gemini": {"family": "gemini", "base_url": "https://generativelanguage.googleapis.com"},
    "ollama": {"family": "ollama", "base_url": "http://localhost:11434"},
    "lmstudio": {"family": "lmstudio", "base_url": "http://localhost:1234/v1"},
    # OpenAI-compatible hosted APIs
    "deepseek": {"family": "openai", "base_url": "https://api.deepseek.com/v1"},
    "groq": {"family": "openai", "base_url": "https://api.groq.com/openai/v1"},
    "mistral": {"family": "openai", "base_url": "https://api.mistral.ai/v1"},
    "openrouter": {"family": "openai", "base_url": "https://openrouter.ai/api/v1"},
    "xai": {"family": "openai", "base_url": "https://api.x.ai/v1"},
}


def _family_class(family: str) -> type[ProviderAdapter]:
    if family == "claude":
        from convoy.adapters.anthropic import AnthropicAdapter

        return AnthropicAdapter
    elif family == "openai":
        from convoy.adapters.openai import OpenAIAdapter

        return OpenAIAdapter
    elif family == "gemini":
        from convoy.adapters.google import GeminiAdapter

        return GeminiAdapter
    elif family == "ollama":
        from convoy.adapters.ollama import OllamaAdapter

        return OllamaAdapter
    elif family == "lmstudio":
        from convoy.adapters.openai import LMStudioAdapter

        return LMStudioAdapter
    elif family == "openai-compatible":
        from convoy.adapters.openai import OpenAICompatibleAdapter

        return OpenAICompatibleAdapter

    raise ConfigurationError(f"Unknown adapter family: '{family}'")


def create_adapter(provider: str, settings: ProviderSettings | None = None) -> ProviderAdapter:
    """
    Factory function that returns the correct adapter for the given provider.

    Parameters
    ----------
    provider :
        An internal provider key such as ``"claude"``, ``"openai"``,
        ``"gemini"``, ``"ollama"`` or ``"lmstudio"``.
    settings :
        API key, base URL and timeout. Providers not listed in
        :data:`PROVIDER_DEFAULTS` are treated as OpenAI-compatible and
        need a base URL.
    """
    provider = provider.lower().strip()
    settings = settings or ProviderSettings()
    defaults = PROVIDER_DEFAULTS.get(provider)

    if defaults is None:
        if not settings.base_url:
            raise ConfigurationError(
                f"Unknown provider: '{provider}'. Supported: {', '.join(PROVIDER_DEFAULTS)}",
                hint=f"For an OpenAI-compatible server set {provider.upper().replace('-', '_')}_BASE_URL.",
            )
        family = "openai-compatible"
    else:
        family = defaults["family"]
        if not settings.base_url:
            settings = settings.model_copy(update={"base_url": defaults["base_url"]})

    return _family_class(family)(provider, settings)


__all__ = ["PROVIDER_DEFAULTS", "ProviderAdapter", "RawEvent", "WireRequest", "create_adapter"]
