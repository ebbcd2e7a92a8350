"""
convoy.adapters.base - Abstract base class for provider adapters.

Every adapter translates between the canonical conversation model and one
provider family's native API: headers and auth scheme, JSON field names,
and the streaming envelope. The engine never branches on provider identity;
it only talks to this interface.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from convoy.config import ProviderSettings
from convoy.core.events import StreamEvent
from convoy.core.messages import CompletionOutcome, Conversation, ToolDefinition
from convoy.core.models import ModelSpec
from convoy.errors import ConfigurationError

logger = logging.getLogger("convoy.adapters")

DEFAULT_MAX_TOKENS = 4096

# Sentinel payload some SSE streams send as their terminal marker
SSE_DONE = "[DONE]"


@dataclass
class WireRequest:
    """One HTTP request in a provider's native shape."""
    method: str
    path: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RawEvent:
    """One framed stream payload: SSE ``event`` name plus decoded ``data``."""
    data: Any
    event: str = ""


class ProviderAdapter(ABC):
    """
    Interface contract for all provider adapters.

    Subclasses set ``family``, ``default_base_url`` and ``stream_framing``
    (``"sse"`` or ``"ndjson"``) and implement the three translation methods.
    """

    family: ClassVar[str] = ""
    default_base_url: ClassVar[str] = ""
    stream_framing: ClassVar[str] = "sse"
    requires_api_key: ClassVar[bool] = True

    def __init__(self, provider: str, settings: ProviderSettings | None = None) -> None:
        self.provider = provider
        self.settings = settings or ProviderSettings()
        self.base_url = (self.settings.base_url or self.default_base_url).rstrip("/")
        if not self.base_url:
            raise ConfigurationError(
                f"No base URL configured for provider '{provider}'",
                hint=f"Set {provider.upper().replace('-', '_')}_BASE_URL",
            )

    @property
    def api_key(self) -> str:
        return self.settings.api_key

    def auth_headers(self) -> dict[str, str]:
        """Headers that authenticate every request (may be empty)."""
        return {}

    def check_credentials(self) -> None:
        if self.requires_api_key and not self.api_key:
            raise ConfigurationError(
                f"No API key configured for provider '{self.provider}'",
                hint="Set the provider's *_API_KEY environment variable.",
            )

    # ------------------------------------------------------------------
    # Translation contract
    # ------------------------------------------------------------------

    @abstractmethod
    def build_request(self, conversation: Conversation, spec: ModelSpec, *, stream: bool) -> WireRequest:
        """Translate a conversation into this family's request."""
        ...

    @abstractmethod
    def parse_response(self, data: Any) -> CompletionOutcome:
        """Translate a complete (buffered) response body into an outcome."""
        ...

    @abstractmethod
    def decode_stream_event(self, raw: RawEvent) -> list[StreamEvent]:
        """Translate one framed stream payload into canonical events."""
        ...

    def error_hint(self, status_code: int | None, body: str, model_id: str) -> str | None:
        """A provider-specific suggestion for a failed request, if any.

        ``status_code`` is ``None`` when the connection itself failed.
        """
        if status_code in (401, 403):
            return "Check that the API key is valid for this provider."
        if status_code == 404:
            return f"Model '{model_id}' may not exist for provider '{self.provider}'."
        if status_code == 429:
            return "Rate limited by the provider; retry after a short delay."
        return None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def tools_for(self, conversation: Conversation, spec: ModelSpec) -> list[ToolDefinition]:
        """Tools to advertise, after checking the model's capabilities.

        Images on a model without vision are a configuration error; tools on
        a model without tool calling are dropped with a warning.
        """
        if conversation.has_images and not spec.capabilities.accepts_images:
            raise ConfigurationError(
                f"Model '{spec.provider}:{spec.model_id}' does not accept images",
                hint="Remove the image parts or pick a vision-capable model.",
            )
        if conversation.tools and not spec.capabilities.accepts_tool_calls:
            logger.warning(
                "Model %s:%s does not support tool calls; %d tool(s) not sent",
                spec.provider, spec.model_id, len(conversation.tools),
            )
            return []
        return list(conversation.tools)

    @staticmethod
    def temperature_for(conversation: Conversation, spec: ModelSpec) -> float | None:
        if conversation.temperature is None or not spec.capabilities.accepts_temperature:
            return None
        return conversation.temperature

    @staticmethod
    def max_tokens_for(conversation: Conversation, spec: ModelSpec, required: bool = False) -> int | None:
        if conversation.max_tokens is not None:
            return conversation.max_tokens
        if required:
            return spec.limits.max_output or DEFAULT_MAX_TOKENS
        return None


def parse_arguments(raw: Any) -> Any:
    """Normalise tool-call arguments to a structured value.

    Some providers send a JSON string, others a parsed object. Unparsable
    strings are kept as ``{"raw": ...}`` so the model can see what it sent.
    """
    if not isinstance(raw, str):
        return raw if raw is not None else {}
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON: %.120s", raw)
        return {"raw": raw}
