"""
convoy.adapters.anthropic - Anthropic Messages API (provider key ``claude``).

System messages are lifted into the top-level ``system`` field, tool calls
become ``tool_use`` blocks and results ``tool_result`` blocks inside a user
turn, and consecutive same-role turns are merged because the API requires
strict user/assistant alternation.
"""

from __future__ import annotations

import logging
from typing import Any

from convoy.adapters.base import ProviderAdapter, RawEvent, WireRequest
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

logger = logging.getLogger("convoy.adapters.anthropic")

ANTHROPIC_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def _usage(data: dict[str, Any] | None) -> Usage | None:
    if not data:
        return None
    return Usage(
        prompt_tokens=data.get("input_tokens") or 0,
        completion_tokens=data.get("output_tokens") or 0,
        cache_read_tokens=data.get("cache_read_input_tokens") or 0,
    )


class AnthropicAdapter(ProviderAdapter):
    """Adapter for Anthropic's Messages API."""

    family = "claude"
    default_base_url = "https://api.anthropic.com"

    def auth_headers(self) -> dict[str, str]:
        headers = {"anthropic-version": ANTHROPIC_VERSION}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    # ── Request ──────────────────────────────────────────────────────────

    def _to_anthropic_message(self, message: Message) -> dict[str, Any]:
        """Convert a canonical message to Anthropic format."""
        if message.role == Role.TOOL:
            return {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": r.call_id,
                        "content": r.output_text(),
                        "is_error": r.is_error,
                    }
                    for r in message.tool_results
                ],
            }

        content: list[dict[str, Any]] = []
        if message.text:
            content.append({"type": "text", "text": message.text})
        for image in message.images:
            if image.data:
                source = {"type": "base64", "media_type": image.mime_type, "data": image.data}
            else:
                source = {"type": "url", "url": image.url}
            content.append({"type": "image", "source": source})
        for tc in message.tool_calls:
            args = tc.arguments if isinstance(tc.arguments, dict) else {"raw": tc.arguments}
            content.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": args})

        role = "assistant" if message.role == Role.ASSISTANT else "user"
        return {"role": role, "content": content}

    @staticmethod
    def _fix_anthropic_alternation(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Merge consecutive same-role messages into one."""
        fixed: list[dict[str, Any]] = []
        for msg in messages:
            if fixed and msg["role"] == fixed[-1]["role"]:
                fixed[-1]["content"] = fixed[-1]["content"] + msg["content"]
            else:
                fixed.append(msg)
        return fixed

    def build_request(self, conversation: Conversation, spec: ModelSpec, *, stream: bool) -> WireRequest:
        tools = self.tools_for(conversation, spec)

        system_parts = []
        conv_messages = []
        for message in conversation.messages:
            if message.role == Role.SYSTEM:
                system_parts.append(message.text)
            else:
                conv_messages.append(self._to_anthropic_message(message))
        conv_messages = self._fix_anthropic_alternation([m for m in conv_messages if m["content"]])

        body: dict[str, Any] = {
            "model": spec.model_id,
            "max_tokens": self.max_tokens_for(conversation, spec, required=True),
            "messages": conv_messages,
        }
        if stream:
            body["stream"] = True

        temperature = self.temperature_for(conversation, spec)
        if temperature is not None:
            body["temperature"] = temperature

        # Mark the system prompt cacheable so later turns skip re-processing it
        if system_parts:
            body["system"] = [
                {
                    "type": "text",
                    "text": "\n\n".join(system_parts),
                    "cache_control": {"type": "ephemeral"},
                }
            ]

        if tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]

        return WireRequest("POST", "/v1/messages", body, headers=self.auth_headers())

    # ── Buffered response ────────────────────────────────────────────────

    def parse_response(self, data: Any) -> CompletionOutcome:
        if not isinstance(data, dict) or "content" not in data:
            raise ProtocolViolation(f"{self.provider} response has no content blocks")

        text_parts = []
        tool_calls = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id") or f"call_{len(tool_calls)}",
                    name=block.get("name", ""),
                    arguments=block.get("input") or {},
                ))

        return outcome_from_parts(
            "".join(text_parts),
            tool_calls,
            _usage(data.get("usage")) or Usage(),
            _STOP_REASONS.get(data.get("stop_reason") or "", data.get("stop_reason") or "stop"),
        )

    # ── Streaming ────────────────────────────────────────────────────────

    def decode_stream_event(self, raw: RawEvent) -> list[StreamEvent]:
        event = raw.data
        if not isinstance(event, dict):
            return []
        event_type = event.get("type") or raw.event

        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            key = ("block", event.get("index", 0))
            if delta.get("type") == "text_delta":
                return [StreamEvent.text_delta(delta.get("text", ""))]
            if delta.get("type") == "input_json_delta":
                return [StreamEvent.fragment(key, args_delta=delta.get("partial_json", ""))]
            return []

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                return [StreamEvent.fragment(
                    ("block", event.get("index", 0)),
                    call_id=block.get("id", ""),
                    name=block.get("name", ""),
                )]
            if block.get("type") == "text" and block.get("text"):
                return [StreamEvent.text_delta(block["text"])]
            return []

        if event_type == "content_block_stop":
            return [StreamEvent.fragment(("block", event.get("index", 0)), complete=True)]

        if event_type == "message_start":
            usage = _usage((event.get("message") or {}).get("usage"))
            return [StreamEvent.usage_update(usage)] if usage else []

        if event_type == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason") or ""
            return [StreamEvent(
                type=USAGE,
                usage=_usage(event.get("usage")),
                finish_reason=_STOP_REASONS.get(stop_reason, stop_reason),
            )]

        if event_type == "message_stop":
            return [StreamEvent.done()]

        if event_type == "error":
            error = event.get("error") or {}
            raise ProtocolViolation(
                f"{self.provider} stream reported {error.get('type', 'an error')}: {error.get('message', '')}"
            )

        # ping and unknown event types
        return []
