"""
convoy.catalog.models_dev - Fetch and translate the models.dev registry.

The registry is one JSON object keyed by provider id. Each provider carries
``id``, ``name`` and a ``models`` object keyed by model id; each model
carries optional ``limit``, ``cost``, ``modalities``, capability booleans and
a ``status``.

Every field is read individually with a documented default. A malformed
field falls back to its own default (with a warning naming the provider,
model and field) instead of discarding the whole model entry.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from convoy.core.models import (
    Capabilities,
    ModelSpec,
    ModelType,
    Pricing,
    ProviderModels,
    TokenLimits,
)
from convoy.errors import CatalogDecodeError, CatalogFetchError

logger = logging.getLogger("convoy.catalog.models_dev")

MODELS_DEV_API_URL = "https://models.dev/api.json"
FETCH_TIMEOUT = 30.0

# Embedding batching defaults when the registry supplies none
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_MAX_BATCH_SIZE = 100

# Registry provider id -> internal provider key. Unlisted ids pass through.
PROVIDER_ALIASES: dict[str, str] = {
    "anthropic": "claude",
    "google": "gemini",
    "amazon-bedrock": "bedrock",
    "azure": "azure-openai",
    "cloudflare-workers-ai": "cloudflare",
    "moonshotai": "moonshot",
    "moonshotai-cn": "moonshot",
    "alibaba": "qianwen",
    "alibaba-cn": "qianwen",
    "zai": "zhipuai",
    "zai-coding-plan": "zhipuai",
}

_VISION_MODALITIES = frozenset({"image", "vision"})


def map_provider_name(source_id: str) -> str:
    """Map a registry provider id to the internal provider key."""
    return PROVIDER_ALIASES.get(source_id, source_id)


def classify_model(model_id: str, name: str = "") -> ModelType:
    """Classify by case-insensitive substring: embedding, then reranker, else chat."""
    haystack = f"{model_id}\n{name}".lower()
    if "embed" in haystack:  # also covers "embedding"
        return ModelType.EMBEDDING
    if "rerank" in haystack:
        return ModelType.RERANKER
    return ModelType.CHAT


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------

class _FieldReader:
    """Reads typed fields from one model entry, warning on malformed values."""

    def __init__(self, provider: str, model_id: str, entry: dict[str, Any]) -> None:
        self.provider = provider
        self.model_id = model_id
        self.entry = entry

    def _warn(self, path: str, value: Any, expected: str) -> None:
        logger.warning(
            "models.dev %s/%s: field '%s' should be %s, got %r; using default",
            self.provider, self.model_id, path, expected, value,
        )

    def _lookup(self, path: str) -> Any:
        node: Any = self.entry
        for key in path.split("."):
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return node

    def flag(self, path: str, default: bool = False) -> bool:
        value = self._lookup(path)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        self._warn(path, value, "a boolean")
        return default

    def count(self, path: str) -> int | None:
        value = self._lookup(path)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            self._warn(path, value, "a non-negative integer")
            return None
        return int(value)

    def price(self, path: str) -> float | None:
        value = self._lookup(path)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self._warn(path, value, "a number")
            return None
        return float(value)

    def text(self, path: str, default: str = "") -> str:
        value = self._lookup(path)
        if value is None:
            return default
        if isinstance(value, str):
            return value
        self._warn(path, value, "a string")
        return default

    def names(self, path: str) -> tuple[str, ...]:
        value = self._lookup(path)
        if value is None:
            return ()
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return tuple(v.lower() for v in value)
        self._warn(path, value, "a list of strings")
        return ()


def convert_model(provider: str, model_id: str, entry: dict[str, Any]) -> ModelSpec | None:
    """Translate one registry model entry; ``None`` if it is deprecated."""
    read = _FieldReader(provider, model_id, entry)
    if read.text("status") == "deprecated":
        return None

    name = read.text("name", model_id)
    model_type = classify_model(read.text("id", model_id), name)

    context = read.count("limit.context")
    explicit_input = read.count("limit.input")
    max_input = explicit_input if explicit_input is not None else context
    max_output = read.count("limit.output")

    input_modalities = read.names("modalities.input") or ("text",)
    output_modalities = read.names("modalities.output") or ("text",)

    capabilities = Capabilities(
        accepts_images=bool(_VISION_MODALITIES.intersection(input_modalities)),
        accepts_tool_calls=read.flag("tool_call"),
        accepts_reasoning=read.flag("reasoning"),
        accepts_temperature=read.flag("temperature"),
        accepts_attachments=read.flag("attachment"),
        open_weights=read.flag("open_weights"),
    )
    pricing = Pricing(
        input=read.price("cost.input"),
        output=read.price("cost.output"),
        reasoning=read.price("cost.reasoning"),
        cache_read=read.price("cost.cache_read"),
        cache_write=read.price("cost.cache_write"),
    )

    embedding: dict[str, int | None] = {}
    if model_type == ModelType.EMBEDDING:
        embedding = {
            "max_tokens_per_chunk": context if context is not None else explicit_input,
            "default_chunk_size": read.count("default_chunk_size") or DEFAULT_CHUNK_SIZE,
            "max_batch_size": read.count("max_batch_size") or DEFAULT_MAX_BATCH_SIZE,
        }

    return ModelSpec(
        provider=provider,
        model_id=model_id,
        display_name=name,
        model_type=model_type,
        capabilities=capabilities,
        limits=TokenLimits(max_input=max_input, max_output=max_output),
        pricing=pricing,
        input_modalities=input_modalities,
        output_modalities=output_modalities,
        **embedding,
    )


def convert_models_dev(document: Any) -> list[ProviderModels]:
    """Translate a whole registry document into per-provider model sets.

    Providers that collapse onto the same internal key are merged; on a
    duplicate model id the first source (in sorted source-id order) wins.
    Providers with no surviving models are dropped.
    """
    if not isinstance(document, dict):
        raise CatalogDecodeError(
            f"models.dev document must be a JSON object, got {type(document).__name__}"
        )

    merged: dict[str, dict[str, ModelSpec]] = {}
    for source_id in sorted(document):
        provider_entry = document[source_id]
        if not isinstance(provider_entry, dict):
            logger.warning("models.dev provider '%s' is not an object; skipped", source_id)
            continue
        models = provider_entry.get("models")
        if not isinstance(models, dict) or not models:
            continue

        provider = map_provider_name(source_id)
        bucket = merged.setdefault(provider, {})
        for model_id, entry in models.items():
            if not isinstance(entry, dict):
                logger.warning("models.dev %s/%s is not an object; skipped", source_id, model_id)
                continue
            spec = convert_model(provider, model_id, entry)
            if spec is not None and model_id not in bucket:
                bucket[model_id] = spec

    return [
        ProviderModels(provider=provider, models=tuple(specs.values()))
        for provider, specs in merged.items()
        if specs
    ]


async def fetch_models_dev(
    url: str = MODELS_DEV_API_URL,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = FETCH_TIMEOUT,
) -> Any:
    """GET the registry document and return the decoded JSON."""
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout)
    try:
        try:
            resp = await http.get(url, timeout=timeout)
        except httpx.HTTPError as exc:
            raise CatalogFetchError(
                f"Failed to fetch models from '{url}': {exc.__class__.__name__}: {exc}",
                endpoint=url,
            ) from exc

        if not resp.is_success:
            raise CatalogFetchError(
                f"HTTP error {resp.status_code} when fetching models from '{url}'",
                endpoint=url,
                status_code=resp.status_code,
            )

        try:
            return json.loads(resp.content)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CatalogDecodeError(
                f"Failed to parse JSON response from '{url}': {exc}",
                fragment=resp.content[:200],
            ) from exc
    finally:
        if owns_client:
            await http.aclose()
