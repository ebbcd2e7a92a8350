"""Tests for the Client entry point."""

from __future__ import annotations

import httpx
import pytest

from convoy import Client, ConvoyConfig
from convoy.catalog import ModelCatalog
from convoy.core.messages import Conversation, Message, ToolDefinition
from convoy.core.models import ModelRef
from convoy.errors import ConfigurationError

from conftest import build_spec


def _catalog():
    return ModelCatalog.offline([build_spec("openai", "gpt-4o")])


def _conversation(provider="openai", model_id="gpt-4o", **kwargs):
    conv = Conversation(model=ModelRef(provider=provider, model_id=model_id), **kwargs)
    conv.append(Message.user("hi"))
    return conv


@pytest.mark.asyncio
async def test_provider_mismatch(mock_http):
    config = ConvoyConfig(api_keys={"openai": "sk-test"})
    client = Client(config, "openai", catalog=_catalog(), http_client=mock_http(lambda r: httpx.Response(200)))
    with pytest.raises(ConfigurationError, match="bound to 'openai'"):
        await client.resolve("claude:claude-sonnet-4-5")


@pytest.mark.asyncio
async def test_run_executes_tools_and_tracks_cost(mock_http):
    replies = iter([
        {"choices": [{"message": {"content": "", "tool_calls": [
            {"id": "call_1", "type": "function", "function": {"name": "clock", "arguments": "{}"}},
        ]}, "finish_reason": "tool_calls"}], "usage": {"prompt_tokens": 100, "completion_tokens": 10}},
        {"choices": [{"message": {"content": "It is noon."}, "finish_reason": "stop"}],
         "usage": {"prompt_tokens": 150, "completion_tokens": 5}},
    ])
    http = mock_http(lambda request: httpx.Response(200, json=next(replies)))
    config = ConvoyConfig(api_keys={"openai": "sk-test"}, stream=False)

    async def executor(call):
        return "12:00"

    async with Client(config, "openai", catalog=_catalog(), http_client=http) as client:
        result = await client.run(
            _conversation(stream=False, tools=[ToolDefinition("clock")]), executor
        )

    assert result.text == "It is noon."
    assert result.turns == 2
    assert result.usage.prompt_tokens == 250
    assert len(client.cost_tracker.turn_costs) == 2
    assert client.cost_tracker.total_cost_usd > 0


def test_unknown_provider_needs_base_url():
    with pytest.raises(ConfigurationError):
        Client(ConvoyConfig(), "acme-ai", catalog=_catalog())
