"""
convoy.client - One entry point for talking to a provider.

A :class:`Client` binds a configuration, a provider and a model catalog.
The adapter family is selected once at construction; everything after that
goes through the provider-agnostic engine.

Usage::

    async with Client(ConvoyConfig.from_env(), "claude") as client:
        conv = Conversation(ModelRef.parse("claude:claude-sonnet-4-5"))
        conv.append(Message.user("Hello"))
        result = await client.run(conv, executor)
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from convoy.adapters import create_adapter
from convoy.cancellation import CancellationToken
from convoy.catalog import ModelCatalog
from convoy.config import ConvoyConfig
from convoy.core.cost import CostTracker
from convoy.core.messages import CompletionOutcome, Conversation
from convoy.core.models import ModelRef, ModelSpec
from convoy.engine.completion import CompletionEngine, DeltaCallback
from convoy.engine.loop import LoopResult, ToolExecutionLoop, ToolExecutor
from convoy.errors import ConfigurationError

logger = logging.getLogger("convoy.client")


class Client:
    """Completion client for one provider."""

    def __init__(
        self,
        config: ConvoyConfig | None = None,
        provider: str = "openai",
        *,
        catalog: ModelCatalog | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or ConvoyConfig.from_env()
        self.provider = provider.lower().strip()
        self.adapter = create_adapter(self.provider, self.config.provider_settings(self.provider))
        self.catalog = catalog or ModelCatalog(
            self.config.catalog_url,
            max_age=self.config.catalog_max_age,
            http_client=http_client,
        )
        self.engine = CompletionEngine(self.adapter, http_client=http_client)
        self.cost_tracker = CostTracker()
        logger.debug("Client ready: provider=%s family=%s", self.provider, self.adapter.family)

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.engine.close()

    def _check_provider(self, ref: ModelRef) -> None:
        if ref.provider != self.provider:
            raise ConfigurationError(
                f"Conversation targets provider '{ref.provider}' but this client is bound to '{self.provider}'",
                hint=f"Create a Client for provider '{ref.provider}'.",
            )

    async def resolve(self, ref: ModelRef | str, *, token: CancellationToken | None = None) -> ModelSpec:
        """Resolve a model reference (or ``"provider:model"`` string) to its spec."""
        if isinstance(ref, str):
            ref = ModelRef.parse(ref)
        self._check_provider(ref)
        return await self.catalog.resolve(ref.provider, ref.model_id, token=token)

    async def complete(
        self,
        conversation: Conversation,
        *,
        token: CancellationToken | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> CompletionOutcome:
        """One provider call; tool calls are returned, not executed."""
        spec = await self.resolve(conversation.model, token=token)
        outcome = await self.engine.complete(conversation, spec, token=token, on_delta=on_delta)
        self.cost_tracker.record(outcome.usage, spec)
        return outcome

    async def run(
        self,
        conversation: Conversation,
        executor: ToolExecutor,
        *,
        token: CancellationToken | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> LoopResult:
        """Run the conversation through the tool loop until the model answers."""
        spec = await self.resolve(conversation.model, token=token)
        loop = ToolExecutionLoop(
            self.engine,
            executor,
            max_depth=self.config.max_tool_depth,
            tool_timeout=self.config.tool_timeout,
            parallel_tools=self.config.parallel_tools,
            cost_tracker=self.cost_tracker,
        )
        return await loop.run(conversation, spec, token=token, on_delta=on_delta)
