"""
convoy.adapters.google - Google Gemini generateContent (provider key ``gemini``).

Gemini calls the assistant role ``model``, carries tool calls as
``functionCall`` parts and their answers as ``functionResponse`` parts in a
user turn, and requires strict user/model alternation. The API key travels
as the ``key`` query parameter. Gemini assigns no tool-call ids, so calls
are numbered ``call_0``, ``call_1``, ... in response order.
"""

from __future__ import annotations

import logging
from typing import Any

from convoy.adapters.base import ProviderAdapter, RawEvent, WireRequest
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
from convoy.errors import ProtocolViolation

logger = logging.getLogger("convoy.adapters.google")

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}


def _usage(data: dict[str, Any] | None) -> Usage | None:
    if not data:
        return None
    return Usage(
        prompt_tokens=data.get("promptTokenCount") or 0,
        completion_tokens=data.get("candidatesTokenCount") or 0,
        cache_read_tokens=data.get("cachedContentTokenCount") or 0,
        reasoning_tokens=data.get("thoughtsTokenCount") or 0,
    )


def _finish_reason(reason: str) -> str:
    return _FINISH_REASONS.get(reason, reason.lower() or "stop")


def _visible_parts(data: dict[str, Any]) -> tuple[list[dict[str, Any]], str]:
    """Content parts of the first candidate and its finish reason."""
    candidates = data.get("candidates") or []
    if not candidates:
        return [], ""
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    # thinking parts are internal reasoning, not output
    return [p for p in parts if not p.get("thought")], candidate.get("finishReason") or ""


class GeminiAdapter(ProviderAdapter):
    """Adapter for the Gemini REST API."""

    family = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com"

    # ── Request ──────────────────────────────────────────────────────────

    def _to_gemini_content(self, message: Message) -> dict[str, Any]:
        if message.role == Role.TOOL:
            parts = [
                {
                    "functionResponse": {
                        "name": r.name,
                        "response": {"error" if r.is_error else "result": r.output},
                    }
                }
                for r in message.tool_results
            ]
            return {"role": "user", "parts": parts}

        parts: list[dict[str, Any]] = []
        if message.text:
            parts.append({"text": message.text})
        for image in message.images:
            if image.data:
                parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.data}})
            else:
                parts.append({"fileData": {"mimeType": image.mime_type, "fileUri": image.url}})
        for tc in message.tool_calls:
            parts.append({"functionCall": {"name": tc.name, "args": tc.arguments}})

        role = "model" if message.role == Role.ASSISTANT else "user"
        return {"role": role, "parts": parts}

    @staticmethod
    def _merge_gemini_contents(contents: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Merge consecutive same-role content blocks.

        Multiple tool results must land in a single Content with multiple
        functionResponse parts.
        """
        merged: list[dict[str, Any]] = []
        for content in contents:
            if merged and content["role"] == merged[-1]["role"]:
                merged[-1]["parts"].extend(content["parts"])
            else:
                merged.append(content)
        return merged

    def build_request(self, conversation: Conversation, spec: ModelSpec, *, stream: bool) -> WireRequest:
        tools = self.tools_for(conversation, spec)

        system_parts = []
        contents = []
        for message in conversation.messages:
            if message.role == Role.SYSTEM:
                system_parts.append(message.text)
            else:
                content = self._to_gemini_content(message)
                if content["parts"]:
                    contents.append(content)

        body: dict[str, Any] = {"contents": self._merge_gemini_contents(contents)}

        gen_config: dict[str, Any] = {}
        temperature = self.temperature_for(conversation, spec)
        if temperature is not None:
            gen_config["temperature"] = temperature
        max_tokens = self.max_tokens_for(conversation, spec)
        if max_tokens is not None:
            gen_config["maxOutputTokens"] = max_tokens
        if gen_config:
            body["generationConfig"] = gen_config

        system_text = "\n".join(system_parts).strip()
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}

        if tools:
            body["tools"] = [{
                "functionDeclarations": [
                    {"name": t.name, "description": t.description, "parameters": t.parameters}
                    for t in tools
                ]
            }]

        params = {"key": self.api_key} if self.api_key else {}
        if stream:
            path = f"/v1beta/models/{spec.model_id}:streamGenerateContent"
            params["alt"] = "sse"
        else:
            path = f"/v1beta/models/{spec.model_id}:generateContent"
        return WireRequest("POST", path, body, headers=self.auth_headers(), params=params)

    # ── Buffered response ────────────────────────────────────────────────

    def parse_response(self, data: Any) -> CompletionOutcome:
        if not isinstance(data, dict):
            raise ProtocolViolation(f"{self.provider} response is not a JSON object")

        parts, finish = _visible_parts(data)
        if not data.get("candidates"):
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            logger.warning("Gemini returned no candidates (blockReason=%s)", block_reason)

        text_parts = []
        tool_calls = []
        for part in parts:
            if "text" in part:
                text_parts.append(part["text"])
            elif "functionCall" in part:
                fc = part["functionCall"]
                tool_calls.append(ToolCall(
                    id=f"call_{len(tool_calls)}",
                    name=fc.get("name", ""),
                    arguments=fc.get("args") or {},
                ))

        return outcome_from_parts(
            "".join(text_parts),
            tool_calls,
            _usage(data.get("usageMetadata")) or Usage(),
            _finish_reason(finish),
        )

    # ── Streaming ────────────────────────────────────────────────────────

    def decode_stream_event(self, raw: RawEvent) -> list[StreamEvent]:
        chunk = raw.data
        if not isinstance(chunk, dict):
            return []
        if "error" in chunk:
            error = chunk["error"] or {}
            raise ProtocolViolation(
                f"{self.provider} stream reported an error: {error.get('message', error)}"
            )

        parts, finish = _visible_parts(chunk)
        events: list[StreamEvent] = []
        for part in parts:
            if part.get("text"):
                events.append(StreamEvent.text_delta(part["text"]))
            elif "functionCall" in part:
                fc = part["functionCall"]
                # each functionCall part arrives whole
                events.append(StreamEvent.fragment(
                    None,
                    name=fc.get("name", ""),
                    arguments=fc.get("args") or {},
                    complete=True,
                ))

        usage = _usage(chunk.get("usageMetadata"))
        if usage is not None:
            events.append(StreamEvent.usage_update(usage))
        if finish:
            events.append(StreamEvent.done(_finish_reason(finish)))
        return events

    def error_hint(self, status_code: int | None, body: str, model_id: str) -> str | None:
        if status_code == 400 and "API key" in body:
            return "Check GEMINI_API_KEY (or GOOGLE_API_KEY)."
        if status_code in (500, 503):
            return f"The model '{model_id}' may be temporarily overloaded; retry in a few seconds."
        return super().error_hint(status_code, body, model_id)
