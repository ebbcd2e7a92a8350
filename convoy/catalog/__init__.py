"""
convoy.catalog - Model capability and pricing metadata.

Specs are loaded from the models.dev registry (cached for an hour) or
registered explicitly, and resolved by ``(provider, model_id)`` before any
provider call is made.
"""

from convoy.catalog.catalog import (
    CACHE_TTL_SECONDS,
    CatalogCache,
    CatalogSnapshot,
    ModelCatalog,
)
from convoy.catalog.models_dev import (
    MODELS_DEV_API_URL,
    PROVIDER_ALIASES,
    classify_model,
    convert_models_dev,
    fetch_models_dev,
    map_provider_name,
)

__all__ = [
    "CACHE_TTL_SECONDS",
    "MODELS_DEV_API_URL",
    "PROVIDER_ALIASES",
    "CatalogCache",
    "CatalogSnapshot",
    "ModelCatalog",
    "classify_model",
    "convert_models_dev",
    "fetch_models_dev",
    "map_provider_name",
]
