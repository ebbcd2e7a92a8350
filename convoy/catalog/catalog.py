"""
convoy.catalog.catalog - Model capability catalog with a time-based cache.

The catalog owns an explicit :class:`CatalogCache` built around an
injectable clock, so expiry can be simulated in tests. Concurrent callers
that find the cache cold share one in-flight fetch. A refresh builds the new
snapshot completely before swapping it in with a single assignment, so
readers always see either the old or the new catalog, never a mix.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from convoy.cancellation import CancellationToken, guarded
from convoy.catalog.models_dev import (
    MODELS_DEV_API_URL,
    convert_models_dev,
    fetch_models_dev,
)
from convoy.core.models import ModelSpec, ModelType, ProviderModels
from convoy.errors import CatalogDecodeError, CatalogFetchError, ConfigurationError

logger = logging.getLogger("convoy.catalog")

CACHE_TTL_SECONDS = 3600.0  # 1 hour

Clock = Callable[[], float]
Fetcher = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class CatalogSnapshot:
    """An immutable view of every model known after one fetch."""
    providers: tuple[ProviderModels, ...]
    fetched_at: float
    source_url: str
    index: dict[tuple[str, str], ModelSpec] = field(default_factory=dict, compare=False)

    @classmethod
    def build(cls, providers: list[ProviderModels], fetched_at: float, source_url: str) -> "CatalogSnapshot":
        index = {spec.key: spec for group in providers for spec in group.models}
        return cls(tuple(providers), fetched_at, source_url, index)

    @property
    def specs(self) -> list[ModelSpec]:
        return [spec for group in self.providers for spec in group.models]


class CatalogCache:
    """Holds the latest snapshot per source URL and decides freshness."""

    def __init__(self, clock: Clock = time.monotonic, max_age: float = CACHE_TTL_SECONDS) -> None:
        self.clock = clock
        self.max_age = max_age
        self._entries: dict[str, CatalogSnapshot] = {}

    def get(self, url: str, max_age: float | None = None) -> CatalogSnapshot | None:
        """The cached snapshot for *url* if it is younger than *max_age*."""
        snapshot = self._entries.get(url)
        if snapshot is None:
            return None
        age = self.clock() - snapshot.fetched_at
        if age < (self.max_age if max_age is None else max_age):
            return snapshot
        return None

    def stale(self, url: str) -> CatalogSnapshot | None:
        """The cached snapshot for *url* regardless of age."""
        return self._entries.get(url)

    def store(self, url: str, snapshot: CatalogSnapshot) -> None:
        self._entries[url] = snapshot

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class _InflightFetch:
    """A fetch shared by every caller that found the cache cold."""
    task: asyncio.Task[CatalogSnapshot]
    waiters: int = 0


class ModelCatalog:
    """
    Resolves ``(provider, model_id)`` pairs to :class:`ModelSpec` objects.

    Specs come from two places: *pinned* specs registered explicitly (for
    local or private models the registry does not know) and the refreshed
    registry snapshot. Pinned specs win and survive refreshes.
    """

    def __init__(
        self,
        source_url: str | None = MODELS_DEV_API_URL,
        *,
        max_age: float = CACHE_TTL_SECONDS,
        clock: Clock = time.monotonic,
        fetcher: Fetcher | None = None,
        http_client: httpx.AsyncClient | None = None,
        specs: list[ModelSpec] | None = None,
    ) -> None:
        self.source_url = source_url
        self.cache = CatalogCache(clock=clock, max_age=max_age)
        self._fetcher = fetcher
        self._http_client = http_client
        self._pinned: dict[tuple[str, str], ModelSpec] = {s.key: s for s in specs or ()}
        self._snapshot: CatalogSnapshot | None = None
        self._lock = asyncio.Lock()
        self._inflight: dict[str, _InflightFetch] = {}
        self.fetch_count = 0

    @classmethod
    def offline(cls, specs: list[ModelSpec]) -> "ModelCatalog":
        """A catalog that only knows *specs* and never touches the network."""
        return cls(source_url=None, specs=specs)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def register(self, spec: ModelSpec) -> None:
        pinned = dict(self._pinned)
        pinned[spec.key] = spec
        self._pinned = pinned

    def get(self, provider: str, model_id: str) -> ModelSpec | None:
        """Non-blocking lookup against pinned specs and the current snapshot."""
        key = (provider, model_id)
        spec = self._pinned.get(key)
        if spec is not None:
            return spec
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot.index.get(key)
        return None

    async def resolve(
        self,
        provider: str,
        model_id: str,
        *,
        token: CancellationToken | None = None,
    ) -> ModelSpec:
        """Resolve a model, refreshing a cold or expired cache first.

        Raises :class:`ConfigurationError` when the model is unknown. If the
        refresh fails but an older snapshot exists, the older snapshot is
        used.
        """
        spec = self._pinned.get((provider, model_id))
        if spec is not None:
            return spec

        if self.source_url is not None and self.cache.get(self.source_url) is None:
            try:
                await self._refresh_snapshot(self.source_url, None, token)
            except (CatalogFetchError, CatalogDecodeError) as exc:
                if self.cache.stale(self.source_url) is None:
                    raise ConfigurationError(
                        f"Cannot resolve model '{provider}:{model_id}': model catalog unavailable",
                        hint=str(exc),
                    ) from exc
                logger.warning("Catalog refresh failed, using stale catalog: %s", exc)

        spec = self.get(provider, model_id)
        if spec is None:
            known = sorted(m for p, m in self._known_keys() if p == provider)
            hint = (
                f"Known {provider} models include: {', '.join(known[:8])}"
                if known
                else f"No models are known for provider '{provider}'"
            )
            raise ConfigurationError(f"Unknown model '{provider}:{model_id}'", hint=hint)
        return spec

    def list_models(
        self,
        model_type: ModelType | str | None = None,
        provider: str | None = None,
    ) -> list[ModelSpec]:
        specs: dict[tuple[str, str], ModelSpec] = {}
        if self._snapshot is not None:
            specs.update(self._snapshot.index)
        specs.update(self._pinned)
        wanted = ModelType(model_type) if model_type is not None else None
        return [
            s for s in specs.values()
            if (wanted is None or s.model_type == wanted)
            and (provider is None or s.provider == provider)
        ]

    def providers(self) -> list[str]:
        return sorted({p for p, _ in self._known_keys()})

    def _known_keys(self) -> set[tuple[str, str]]:
        keys = set(self._pinned)
        if self._snapshot is not None:
            keys.update(self._snapshot.index)
        return keys

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(
        self,
        source_url: str | None = None,
        max_age: float | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> list[ModelSpec]:
        """Fetch (or reuse a fresh cached copy of) the registry.

        Calls within *max_age* of the last successful fetch reuse it.
        Failures leave the previous snapshot in place.
        """
        url = source_url or self.source_url
        if url is None:
            raise ConfigurationError("This catalog has no source URL to refresh from")
        snapshot = await self._refresh_snapshot(url, max_age, token)
        return snapshot.specs

    def clear(self) -> None:
        """Invalidate the cache; the next resolve or refresh fetches again."""
        self.cache.clear()
        self._snapshot = None
        logger.info("Model catalog cache cleared")

    async def _refresh_snapshot(
        self,
        url: str,
        max_age: float | None,
        token: CancellationToken | None,
    ) -> CatalogSnapshot:
        cached = self.cache.get(url, max_age)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self.cache.get(url, max_age)
            if cached is not None:
                return cached
            inflight = self._inflight.get(url)
            if inflight is None:
                task = asyncio.create_task(self._fetch_and_store(url))
                task.add_done_callback(_consume_future_exception)
                inflight = self._inflight[url] = _InflightFetch(task)
            inflight.waiters += 1

        # Each caller's token only abandons its own wait on the shared fetch
        try:
            return await guarded(token, asyncio.shield(inflight.task))
        finally:
            inflight.waiters -= 1
            if inflight.waiters == 0 and not inflight.task.done():
                logger.debug("Abandoning catalog fetch for %s: no callers left", url)
                inflight.task.cancel()
                if self._inflight.get(url) is inflight:
                    del self._inflight[url]

    async def _fetch_and_store(self, url: str) -> CatalogSnapshot:
        try:
            snapshot = await self._fetch_snapshot(url)
            # The only exclusive section: swap in the fully built snapshot
            async with self._lock:
                self.cache.store(url, snapshot)
                if url == self.source_url or self._snapshot is None:
                    self._snapshot = snapshot
            return snapshot
        finally:
            inflight = self._inflight.get(url)
            if inflight is not None and inflight.task is asyncio.current_task():
                del self._inflight[url]

    async def _fetch_snapshot(self, url: str) -> CatalogSnapshot:
        logger.info("Fetching model catalog from %s", url)
        self.fetch_count += 1
        if self._fetcher is not None:
            document = await self._fetcher(url)
        else:
            document = await fetch_models_dev(url, client=self._http_client)
        providers = convert_models_dev(document)
        snapshot = CatalogSnapshot.build(providers, self.cache.clock(), url)
        logger.info(
            "Model catalog loaded: %d providers, %d models",
            len(snapshot.providers), len(snapshot.index),
        )
        return snapshot


def _consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' for coordination futures."""
    if fut.cancelled():
        return
    fut.exception()
