"""Tests for CompletionEngine over a mocked HTTP transport."""

from __future__ import annotations

import json

import httpx
import pytest

from convoy.adapters import create_adapter
from convoy.config import ConvoyConfig, ProviderSettings
from convoy.core.messages import (
    Conversation,
    Finished,
    Message,
    ToolCall,
    ToolCallsRequested,
    ToolDefinition,
    Usage,
)
from convoy.core.models import ModelRef
from convoy.engine import CompletionEngine
from convoy.errors import ConfigurationError, DecodeError, ProtocolViolation, TransportError

from conftest import chunked, ndjson, sse

WEATHER = ToolDefinition(name="weather", parameters={"type": "object", "properties": {"city": {"type": "string"}}})
USAGE = Usage(prompt_tokens=10, completion_tokens=2)


# =============================================================================
# One logical response per (family, scenario), in buffered and streamed form
# =============================================================================

def _openai_tool(i, call_id, args):
    return {"index": i, "id": call_id, "type": "function", "function": {"name": "weather", "arguments": args}}


def _claude(event_type, **fields):
    return (event_type, {"type": event_type, **fields})


SCENARIOS = {
    ("openai", "text"): (
        {"choices": [{"message": {"content": "Hello world"}, "finish_reason": "stop"}],
         "usage": {"prompt_tokens": 10, "completion_tokens": 2}},
        sse(
            {"choices": [{"delta": {"role": "assistant", "content": "Hello"}}]},
            {"choices": [{"delta": {"content": " world"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 2}},
            "[DONE]",
        ),
    ),
    ("openai", "tools"): (
        {"choices": [{"message": {"content": "Checking", "tool_calls": [
            {"id": "call_1", "type": "function", "function": {"name": "weather", "arguments": '{"city": "Oslo"}'}},
            {"id": "call_2", "type": "function", "function": {"name": "weather", "arguments": '{"city": "Rome"}'}},
        ]}, "finish_reason": "tool_calls"}],
         "usage": {"prompt_tokens": 10, "completion_tokens": 2}},
        sse(
            {"choices": [{"delta": {"content": "Checking"}}]},
            {"choices": [{"delta": {"tool_calls": [_openai_tool(0, "call_1", '{"city":')]}}]},
            {"choices": [{"delta": {"tool_calls": [_openai_tool(1, "call_2", '{"city": "Rome"}')]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ' "Oslo"}'}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 2}},
            "[DONE]",
        ),
    ),
    ("claude", "text"): (
        {"content": [{"type": "text", "text": "Hello world"}], "stop_reason": "end_turn",
         "usage": {"input_tokens": 10, "output_tokens": 2}},
        sse(
            _claude("message_start", message={"usage": {"input_tokens": 10, "output_tokens": 1}}),
            _claude("content_block_start", index=0, content_block={"type": "text", "text": ""}),
            _claude("content_block_delta", index=0, delta={"type": "text_delta", "text": "Hello"}),
            _claude("content_block_delta", index=0, delta={"type": "text_delta", "text": " world"}),
            _claude("content_block_stop", index=0),
            _claude("message_delta", delta={"stop_reason": "end_turn"}, usage={"output_tokens": 2}),
            _claude("message_stop"),
        ),
    ),
    ("claude", "tools"): (
        {"content": [
            {"type": "text", "text": "Checking"},
            {"type": "tool_use", "id": "toolu_1", "name": "weather", "input": {"city": "Oslo"}},
            {"type": "tool_use", "id": "toolu_2", "name": "weather", "input": {"city": "Rome"}},
        ], "stop_reason": "tool_use", "usage": {"input_tokens": 10, "output_tokens": 2}},
        sse(
            _claude("message_start", message={"usage": {"input_tokens": 10}}),
            _claude("content_block_start", index=0, content_block={"type": "text", "text": ""}),
            _claude("content_block_delta", index=0, delta={"type": "text_delta", "text": "Checking"}),
            _claude("content_block_stop", index=0),
            _claude("content_block_start", index=1,
                    content_block={"type": "tool_use", "id": "toolu_1", "name": "weather", "input": {}}),
            _claude("content_block_delta", index=1, delta={"type": "input_json_delta", "partial_json": '{"city": '}),
            _claude("content_block_delta", index=1, delta={"type": "input_json_delta", "partial_json": '"Oslo"}'}),
            _claude("content_block_stop", index=1),
            _claude("content_block_start", index=2,
                    content_block={"type": "tool_use", "id": "toolu_2", "name": "weather", "input": {}}),
            _claude("content_block_delta", index=2, delta={"type": "input_json_delta", "partial_json": '{"city": "Rome"}'}),
            _claude("content_block_stop", index=2),
            _claude("message_delta", delta={"stop_reason": "tool_use"}, usage={"output_tokens": 2}),
            _claude("message_stop"),
        ),
    ),
    ("gemini", "text"): (
        {"candidates": [{"content": {"role": "model", "parts": [{"text": "Hello world"}]}, "finishReason": "STOP"}],
         "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 2}},
        sse(
            {"candidates": [{"content": {"role": "model", "parts": [{"text": "Hello"}]}}]},
            {"candidates": [{"content": {"role": "model", "parts": [{"text": " world"}]}, "finishReason": "STOP"}],
             "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 2}},
        ),
    ),
    ("gemini", "tools"): (
        {"candidates": [{"content": {"role": "model", "parts": [
            {"text": "Checking"},
            {"functionCall": {"name": "weather", "args": {"city": "Oslo"}}},
            {"functionCall": {"name": "weather", "args": {"city": "Rome"}}},
        ]}, "finishReason": "STOP"}],
         "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 2}},
        sse(
            {"candidates": [{"content": {"role": "model", "parts": [{"text": "Checking"}]}}]},
            {"candidates": [{"content": {"role": "model", "parts": [
                {"functionCall": {"name": "weather", "args": {"city": "Oslo"}}},
            ]}}]},
            {"candidates": [{"content": {"role": "model", "parts": [
                {"functionCall": {"name": "weather", "args": {"city": "Rome"}}},
            ]}, "finishReason": "STOP"}],
             "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 2}},
        ),
    ),
    ("ollama", "text"): (
        {"message": {"role": "assistant", "content": "Hello world"}, "done": True, "done_reason": "stop",
         "prompt_eval_count": 10, "eval_count": 2},
        ndjson(
            {"message": {"role": "assistant", "content": "Hello"}, "done": False},
            {"message": {"role": "assistant", "content": " world"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop",
             "prompt_eval_count": 10, "eval_count": 2},
        ),
    ),
    ("ollama", "tools"): (
        {"message": {"role": "assistant", "content": "Checking", "tool_calls": [
            {"function": {"name": "weather", "arguments": {"city": "Oslo"}}},
            {"function": {"name": "weather", "arguments": {"city": "Rome"}}},
        ]}, "done": True, "done_reason": "stop", "prompt_eval_count": 10, "eval_count": 2},
        ndjson(
            {"message": {"role": "assistant", "content": "Checking"}, "done": False},
            {"message": {"role": "assistant", "content": "", "tool_calls": [
                {"function": {"name": "weather", "arguments": {"city": "Oslo"}}},
                {"function": {"name": "weather", "arguments": {"city": "Rome"}}},
            ]}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop",
             "prompt_eval_count": 10, "eval_count": 2},
        ),
    ),
}

MODEL_IDS = {"openai": "gpt-4o", "claude": "claude-sonnet-4-5", "gemini": "gemini-2.5-flash", "ollama": "qwen3:8b"}


def _is_streaming(request: httpx.Request) -> bool:
    if request.url.path.endswith(":streamGenerateContent"):
        return True
    return json.loads(request.content).get("stream") is True


def scenario_handler(buffered: dict, streamed: bytes, seen: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if _is_streaming(request):
            return httpx.Response(200, content=chunked(streamed, 5))
        return httpx.Response(200, json=buffered)
    return handler


def conversation(provider: str, *, stream: bool, tools: bool = False) -> Conversation:
    conv = Conversation(
        model=ModelRef(provider=provider, model_id=MODEL_IDS.get(provider, "m")),
        stream=stream,
        tools=[WEATHER] if tools else [],
    )
    conv.append(Message.user("Weather in Oslo and Rome?" if tools else "Say hello"))
    return conv


def engine_for(provider: str, client: httpx.AsyncClient, **settings) -> CompletionEngine:
    settings.setdefault("api_key", "test-key")
    return CompletionEngine(create_adapter(provider, ProviderSettings(**settings)), http_client=client)


# =============================================================================
# Buffered / streaming equivalence
# =============================================================================


class TestModeEquivalence:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", ["openai", "claude", "gemini", "ollama"])
    async def test_text_answer(self, provider, spec_factory, mock_http):
        buffered, streamed = SCENARIOS[(provider, "text")]
        engine = engine_for(provider, mock_http(scenario_handler(buffered, streamed)))
        spec = spec_factory(provider, MODEL_IDS[provider])

        b = await engine.complete(conversation(provider, stream=False), spec)
        s = await engine.complete(conversation(provider, stream=True), spec)

        assert isinstance(b, Finished)
        assert b == s
        assert b.text == "Hello world"
        assert b.usage == USAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider", ["openai", "claude", "gemini", "ollama"])
    async def test_tool_calls(self, provider, spec_factory, mock_http):
        buffered, streamed = SCENARIOS[(provider, "tools")]
        engine = engine_for(provider, mock_http(scenario_handler(buffered, streamed)))
        spec = spec_factory(provider, MODEL_IDS[provider])

        b = await engine.complete(conversation(provider, stream=False, tools=True), spec)
        s = await engine.complete(conversation(provider, stream=True, tools=True), spec)

        assert isinstance(b, ToolCallsRequested)
        assert b == s
        assert b.text == "Checking"
        assert [c.arguments for c in b.calls] == [{"city": "Oslo"}, {"city": "Rome"}]
        assert len({c.id for c in b.calls}) == 2

    @pytest.mark.asyncio
    async def test_ids_are_assigned_by_response_order(self, spec_factory, mock_http):
        buffered, streamed = SCENARIOS[("ollama", "tools")]
        engine = engine_for("ollama", mock_http(scenario_handler(buffered, streamed)))
        outcome = await engine.complete(conversation("ollama", stream=True, tools=True),
                                        spec_factory("ollama", "qwen3:8b"))
        assert [c.id for c in outcome.calls] == ["call_0", "call_1"]

    @pytest.mark.asyncio
    async def test_on_delta(self, chat_spec, mock_http):
        buffered, streamed = SCENARIOS[("openai", "text")]
        engine = engine_for("openai", mock_http(scenario_handler(buffered, streamed)))

        streamed_deltas: list[str] = []
        await engine.complete(conversation("openai", stream=True), chat_spec, on_delta=streamed_deltas.append)
        buffered_deltas: list[str] = []
        await engine.complete(conversation("openai", stream=False), chat_spec, on_delta=buffered_deltas.append)

        assert streamed_deltas == ["Hello", " world"]
        assert buffered_deltas == ["Hello world"]

    @pytest.mark.asyncio
    async def test_conversation_is_not_modified(self, chat_spec, mock_http):
        buffered, streamed = SCENARIOS[("openai", "tools")]
        engine = engine_for("openai", mock_http(scenario_handler(buffered, streamed)))
        conv = conversation("openai", stream=True, tools=True)
        await engine.complete(conv, chat_spec)
        assert len(conv.messages) == 1


# =============================================================================
# Wire details
# =============================================================================


class TestRequests:
    @pytest.mark.asyncio
    async def test_request_goes_to_provider_endpoint(self, chat_spec, mock_http):
        seen: list[httpx.Request] = []
        engine = engine_for("openai", mock_http(scenario_handler(*SCENARIOS[("openai", "text")], seen)))
        await engine.complete(conversation("openai", stream=False), chat_spec)

        [request] = seen
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer test-key"
        assert json.loads(request.content)["model"] == "gpt-test"

    @pytest.mark.asyncio
    async def test_pairing_violation_is_raised_before_any_request(self, chat_spec, mock_http):
        seen: list[httpx.Request] = []
        engine = engine_for("openai", mock_http(scenario_handler(*SCENARIOS[("openai", "text")], seen)))
        conv = conversation("openai", stream=True)
        conv.append(Message.assistant("", [ToolCall("c1", "weather", {})]))
        conv.append(Message.user("and?"))

        with pytest.raises(ProtocolViolation):
            await engine.complete(conv, chat_spec)
        assert seen == []

    @pytest.mark.asyncio
    async def test_missing_key_is_raised_before_any_request(self, chat_spec, mock_http):
        seen: list[httpx.Request] = []
        client = mock_http(scenario_handler(*SCENARIOS[("openai", "text")], seen))
        engine = CompletionEngine(create_adapter("openai"), http_client=client)
        with pytest.raises(ConfigurationError):
            await engine.complete(conversation("openai", stream=True), chat_spec)
        assert seen == []

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self, mock_http):
        client = mock_http(lambda request: httpx.Response(200))
        async with engine_for("openai", client):
            pass
        assert not client.is_closed


# =============================================================================
# Errors
# =============================================================================


class TestErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("stream", [False, True])
    async def test_http_status_error(self, stream, chat_spec, mock_http):
        client = mock_http(lambda request: httpx.Response(429, json={"error": {"message": "slow down"}}))
        engine = engine_for("openai", client)
        with pytest.raises(TransportError) as info:
            await engine.complete(conversation("openai", stream=stream), chat_spec)

        err = info.value
        assert err.status_code == 429
        assert err.retryable
        assert err.model == "gpt-test"
        assert err.endpoint == "https://api.openai.com/v1/chat/completions"
        assert "slow down" in str(err)
        assert "Rate limited" in err.hint

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self, chat_spec, mock_http):
        engine = engine_for("openai", mock_http(lambda request: httpx.Response(401, text="bad key")))
        with pytest.raises(TransportError) as info:
            await engine.complete(conversation("openai", stream=False), chat_spec)
        assert not info.value.retryable

    @pytest.mark.asyncio
    async def test_api_key_never_appears_in_errors(self, spec_factory, mock_http):
        secret = "AIzaSecretKey123456"
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(400, text=f"API key not valid: {secret}")

        settings = ConvoyConfig(api_keys={"gemini": secret}).provider_settings("gemini")
        engine = CompletionEngine(create_adapter("gemini", settings), http_client=mock_http(handler))
        with pytest.raises(TransportError) as info:
            await engine.complete(conversation("gemini", stream=True), spec_factory("gemini", "gemini-2.5-flash"))

        assert seen[0].url.params["key"] == secret
        err = info.value
        assert secret not in str(err)
        assert secret not in err.endpoint
        assert "key=" not in err.endpoint
        assert "GEMINI_API_KEY" in err.hint

    @pytest.mark.asyncio
    async def test_connection_failure(self, spec_factory, mock_http):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        engine = engine_for("ollama", mock_http(handler), api_key="")
        with pytest.raises(TransportError) as info:
            await engine.complete(conversation("ollama", stream=True), spec_factory("ollama", "qwen3:8b"))
        assert info.value.status_code is None
        assert info.value.retryable
        assert "ollama serve" in info.value.hint

    @pytest.mark.asyncio
    async def test_invalid_buffered_json(self, chat_spec, mock_http):
        engine = engine_for("openai", mock_http(lambda request: httpx.Response(200, content=b"<html>oops")))
        with pytest.raises(DecodeError) as info:
            await engine.complete(conversation("openai", stream=False), chat_spec)
        assert "<html>" in info.value.fragment

    @pytest.mark.asyncio
    async def test_decode_error_mid_stream_keeps_delivered_text(self, chat_spec, mock_http):
        body = sse({"choices": [{"delta": {"content": "partial"}}]}) + b"data: {truncated\n\n"
        engine = engine_for("openai", mock_http(lambda request: httpx.Response(200, content=chunked(body, 8))))
        deltas: list[str] = []
        with pytest.raises(DecodeError):
            await engine.complete(conversation("openai", stream=True), chat_spec, on_delta=deltas.append)
        assert deltas == ["partial"]

    @pytest.mark.asyncio
    async def test_stream_without_terminal_marker(self, chat_spec, mock_http):
        body = sse({"choices": [{"delta": {"content": "cut off"}}]})
        engine = engine_for("openai", mock_http(lambda request: httpx.Response(200, content=chunked(body, 8))))
        with pytest.raises(ProtocolViolation):
            await engine.complete(conversation("openai", stream=True), chat_spec)
