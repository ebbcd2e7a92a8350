"""
convoy.core.models - Pydantic schemas for model capability metadata.

A :class:`ModelSpec` describes one (provider, model) pair: what it accepts,
how many tokens it takes and emits, and what it costs. Specs are frozen;
the catalog replaces them wholesale on refresh instead of mutating them.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from convoy.errors import ConfigurationError


class ModelType(StrEnum):
    """Classification of catalog models."""
    CHAT = "chat"
    EMBEDDING = "embedding"
    RERANKER = "reranker"


class Capabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    accepts_images: bool = False
    accepts_tool_calls: bool = False
    accepts_reasoning: bool = False
    accepts_temperature: bool = True
    accepts_attachments: bool = False
    open_weights: bool = False


class TokenLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_input: int | None = None
    max_output: int | None = None


class Pricing(BaseModel):
    """Prices in USD per million tokens; ``None`` means unknown."""
    model_config = ConfigDict(frozen=True)

    input: float | None = None
    output: float | None = None
    reasoning: float | None = None
    cache_read: float | None = None
    cache_write: float | None = None


class ModelSpec(BaseModel):
    """Capability, limit and pricing metadata for one model."""
    model_config = ConfigDict(frozen=True)

    provider: str
    model_id: str
    display_name: str = ""
    model_type: ModelType = ModelType.CHAT
    capabilities: Capabilities = Field(default_factory=Capabilities)
    limits: TokenLimits = Field(default_factory=TokenLimits)
    pricing: Pricing = Field(default_factory=Pricing)
    input_modalities: tuple[str, ...] = ("text",)
    output_modalities: tuple[str, ...] = ("text",)

    # Embedding batching; populated only for embedding models
    max_tokens_per_chunk: int | None = None
    default_chunk_size: int | None = None
    max_batch_size: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.provider, self.model_id)

    @property
    def ref(self) -> "ModelRef":
        return ModelRef(provider=self.provider, model_id=self.model_id)


class ModelRef(BaseModel):
    """A ``provider:model-id`` reference to a catalog entry."""
    model_config = ConfigDict(frozen=True)

    provider: str
    model_id: str

    @classmethod
    def parse(cls, text: str) -> "ModelRef":
        """Parse ``"provider:model"``; only the first ``:`` separates.

        ``ollama:qwen2.5-coder:7b`` -> provider ``ollama``, model
        ``qwen2.5-coder:7b``.
        """
        provider, sep, model_id = text.strip().partition(":")
        if not sep or not provider or not model_id:
            raise ConfigurationError(
                f"Invalid model reference '{text}'",
                hint="Use the form provider:model-id, e.g. claude:claude-sonnet-4-5",
            )
        return cls(provider=provider.lower(), model_id=model_id)

    def __str__(self) -> str:
        return f"{self.provider}:{self.model_id}"


class ProviderModels(BaseModel):
    """All surviving models of one internal provider key."""
    model_config = ConfigDict(frozen=True)

    provider: str
    models: tuple[ModelSpec, ...] = ()
