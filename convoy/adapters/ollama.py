"""
convoy.adapters.ollama - Ollama's native ``/api/chat`` endpoint.

The native endpoint is used rather than the OpenAI-compatible one because
the compat layer drops ``tool_calls`` when streaming. Streaming is NDJSON;
the last line carries ``done: true`` and the token counts. Tool calls arrive
whole inside one intermediate chunk and have no ids, so they are numbered
``call_0``, ``call_1``, ... in response order.

``num_ctx`` is always set: Ollama's 4096-token default silently truncates
long system prompts and tool schemas.
"""

from __future__ import annotations

import logging
from typing import Any

from convoy.adapters.base import ProviderAdapter, RawEvent, WireRequest, parse_arguments
from convoy.core.events import StreamEvent
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
from convoy.errors import ConfigurationError, ProtocolViolation

logger = logging.getLogger("convoy.adapters.ollama")

OLLAMA_NUM_CTX = 32768  # covers a long system prompt plus tool schemas


def _usage(data: dict[str, Any]) -> Usage:
    return Usage(
        prompt_tokens=data.get("prompt_eval_count") or 0,
        completion_tokens=data.get("eval_count") or 0,
    )


class OllamaAdapter(ProviderAdapter):
    """Adapter for a local (or remote) Ollama server."""

    family = "ollama"
    default_base_url = "http://localhost:11434"
    stream_framing = "ndjson"
    requires_api_key = False

    def auth_headers(self) -> dict[str, str]:
        # Hosted Ollama endpoints accept a bearer token; local ones need none
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    # ── Request ──────────────────────────────────────────────────────────

    def _to_ollama_messages(self, message: Message) -> list[dict[str, Any]]:
        if message.role == Role.TOOL:
            return [
                {"role": "tool", "content": r.output_text(), "tool_name": r.name}
                for r in message.tool_results
            ]

        out: dict[str, Any] = {"role": str(message.role), "content": message.text}
        if message.images:
            if any(not image.data for image in message.images):
                raise ConfigurationError(
                    "Ollama accepts inline base64 images only",
                    hint="Download the image and pass it as ImagePart(data=...).",
                )
            out["images"] = [image.data for image in message.images]
        if message.tool_calls:
            out["tool_calls"] = [
                {"function": {"name": tc.name, "arguments": tc.arguments}}
                for tc in message.tool_calls
            ]
        return [out]

    def build_request(self, conversation: Conversation, spec: ModelSpec, *, stream: bool) -> WireRequest:
        tools = self.tools_for(conversation, spec)
        messages: list[dict[str, Any]] = []
        for message in conversation.messages:
            messages.extend(self._to_ollama_messages(message))

        options: dict[str, Any] = {"num_ctx": OLLAMA_NUM_CTX}
        temperature = self.temperature_for(conversation, spec)
        if temperature is not None:
            options["temperature"] = temperature
        max_tokens = self.max_tokens_for(conversation, spec)
        if max_tokens is not None:
            options["num_predict"] = max_tokens

        body: dict[str, Any] = {
            "model": spec.model_id,
            "messages": messages,
            "stream": stream,
            "options": options,
        }
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

        return WireRequest("POST", "/api/chat", body, headers=self.auth_headers())

    # ── Buffered response ────────────────────────────────────────────────

    def parse_response(self, data: Any) -> CompletionOutcome:
        if not isinstance(data, dict) or "message" not in data:
            raise ProtocolViolation(f"{self.provider} response has no message")
        msg = data.get("message") or {}

        tool_calls = []
        for i, tc in enumerate(msg.get("tool_calls") or []):
            fn = tc.get("function") or {}
            tool_calls.append(ToolCall(
                id=tc.get("id") or f"call_{i}",
                name=fn.get("name", ""),
                # some Ollama builds send arguments as a JSON string
                arguments=parse_arguments(fn.get("arguments")),
            ))

        return outcome_from_parts(
            msg.get("content") or "",
            tool_calls,
            _usage(data),
            data.get("done_reason") or "stop",
        )

    # ── Streaming ────────────────────────────────────────────────────────

    def decode_stream_event(self, raw: RawEvent) -> list[StreamEvent]:
        chunk = raw.data
        if not isinstance(chunk, dict):
            return []
        if chunk.get("error"):
            raise ProtocolViolation(f"{self.provider} stream reported an error: {chunk['error']}")

        events: list[StreamEvent] = []
        msg = chunk.get("message") or {}
        # "thinking" is reasoning output; only visible content is forwarded
        if msg.get("content"):
            events.append(StreamEvent.text_delta(msg["content"]))
        for tc in msg.get("tool_calls") or []:
            fn = tc.get("function") or {}
            events.append(StreamEvent.fragment(
                None,
                call_id=tc.get("id") or "",
                name=fn.get("name", ""),
                arguments=parse_arguments(fn.get("arguments")),
                complete=True,
            ))

        if chunk.get("done"):
            events.append(StreamEvent.done(chunk.get("done_reason") or "stop", _usage(chunk)))
        return events

    def error_hint(self, status_code: int | None, body: str, model_id: str) -> str | None:
        if status_code is None:
            return (
                f"Cannot connect to Ollama at {self.base_url}. "
                "Make sure Ollama is running: ollama serve"
            )
        if status_code == 404 or "not found" in body.lower():
            return f"Model '{model_id}' is not installed in Ollama. Pull it first: ollama pull {model_id}"
        return super().error_hint(status_code, body, model_id)
