"""
convoy.adapters.openai - OpenAI Chat Completions family.

Also serves every OpenAI-compatible server (LM Studio, DeepSeek, Groq,
Mistral, OpenRouter, ...) given a base URL.

Streaming uses SSE with ``stream_options.include_usage`` so the final chunk
carries token counts. Tool-call fragments are keyed by their ``index``; the
first fragment of a call carries its id and name, later ones only append to
``function.arguments``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from convoy.adapters.base import SSE_DONE, ProviderAdapter, RawEvent, WireRequest, parse_arguments
from convoy.core.events import USAGE, StreamEvent
from convoy.core.messages import (
    CompletionOutcome,
    Conversation,
    Message,
    Role,
    ToolCall,
    Usage,
    outcome_from_parts,
)
from convoy.core.models import ModelSpec
from convoy.errors import ProtocolViolation

logger = logging.getLogger("convoy.adapters.openai")


def _usage(data: dict[str, Any] | None) -> Usage | None:
    if not data:
        return None
    return Usage(
        prompt_tokens=data.get("prompt_tokens") or 0,
        completion_tokens=data.get("completion_tokens") or 0,
        cache_read_tokens=(data.get("prompt_tokens_details") or {}).get("cached_tokens") or 0,
        reasoning_tokens=(data.get("completion_tokens_details") or {}).get("reasoning_tokens") or 0,
    )


def _finish_reason(reason: str | None) -> str:
    return "tool_calls" if reason == "tool_calls" else (reason or "stop")


class OpenAIAdapter(ProviderAdapter):
    """Adapter for the OpenAI Chat Completions API."""

    family = "openai"
    default_base_url = "https://api.openai.com/v1"

    def auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    # ── Request ──────────────────────────────────────────────────────────

    def _to_openai_messages(self, message: Message) -> list[dict[str, Any]]:
        if message.role == Role.TOOL:
            # one wire message per result
            return [
                {"role": "tool", "tool_call_id": r.call_id, "content": r.output_text()}
                for r in message.tool_results
            ]

        if message.role == Role.ASSISTANT:
            out: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            if message.tool_calls:
                out["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                        },
                    }
                    for tc in message.tool_calls
                ]
            return [out]

        if message.images:
            content: list[dict[str, Any]] = []
            if message.text:
                content.append({"type": "text", "text": message.text})
            for image in message.images:
                content.append({"type": "image_url", "image_url": {"url": image.as_data_url()}})
            return [{"role": str(message.role), "content": content}]

        return [{"role": str(message.role), "content": message.text}]

    def build_request(self, conversation: Conversation, spec: ModelSpec, *, stream: bool) -> WireRequest:
        tools = self.tools_for(conversation, spec)
        messages: list[dict[str, Any]] = []
        for message in conversation.messages:
            messages.extend(self._to_openai_messages(message))

        body: dict[str, Any] = {
            "model": spec.model_id,
            "messages": messages,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}

        temperature = self.temperature_for(conversation, spec)
        if temperature is not None:
            body["temperature"] = temperature
        max_tokens = self.max_tokens_for(conversation, spec)
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
            body["tool_choice"] = "auto"

        return WireRequest("POST", "/chat/completions", body, headers=self.auth_headers())

    # ── Buffered response ────────────────────────────────────────────────

    def parse_response(self, data: Any) -> CompletionOutcome:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ProtocolViolation(f"{self.provider} response has no choices")
        choice = choices[0]
        msg = choice.get("message") or {}

        tool_calls = []
        for i, tc in enumerate(msg.get("tool_calls") or []):
            fn = tc.get("function") or {}
            tool_calls.append(ToolCall(
                id=tc.get("id") or f"call_{i}",
                name=fn.get("name", ""),
                arguments=parse_arguments(fn.get("arguments", "")),
            ))

        return outcome_from_parts(
            msg.get("content") or "",
            tool_calls,
            _usage(data.get("usage")) or Usage(),
            _finish_reason(choice.get("finish_reason")),
        )

    # ── Streaming ────────────────────────────────────────────────────────

    def decode_stream_event(self, raw: RawEvent) -> list[StreamEvent]:
        if raw.data == SSE_DONE:
            return [StreamEvent.done()]
        chunk = raw.data
        if not isinstance(chunk, dict):
            return []
        if "error" in chunk:
            error = chunk["error"]
            detail = error.get("message") if isinstance(error, dict) else error
            raise ProtocolViolation(f"{self.provider} stream reported an error: {detail}")

        events: list[StreamEvent] = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                events.append(StreamEvent.text_delta(delta["content"]))
            for tc_delta in delta.get("tool_calls") or []:
                fn = tc_delta.get("function") or {}
                events.append(StreamEvent.fragment(
                    ("index", tc_delta.get("index", 0)),
                    call_id=tc_delta.get("id") or "",
                    name=fn.get("name") or "",
                    args_delta=fn.get("arguments") or "",
                ))
            if choice.get("finish_reason"):
                events.append(StreamEvent(type=USAGE, finish_reason=_finish_reason(choice["finish_reason"])))

        usage = _usage(chunk.get("usage"))
        if usage is not None:
            events.append(StreamEvent.usage_update(usage))
        return events


class OpenAICompatibleAdapter(OpenAIAdapter):
    """Any server speaking the Chat Completions dialect at a custom base URL.

    Local servers (LM Studio, vLLM, llama.cpp) usually need no key.
    """

    family = "openai-compatible"
    default_base_url = ""
    requires_api_key = False


class LMStudioAdapter(OpenAICompatibleAdapter):
    family = "lmstudio"
    default_base_url = "http://localhost:1234/v1"
