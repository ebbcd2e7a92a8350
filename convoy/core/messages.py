"""
convoy.core.messages - The canonical, provider-agnostic conversation model.

Adapters translate to and from these types; nothing outside
``convoy.adapters`` ever sees a provider wire shape.

A conversation is an ordered list of :class:`Message` objects. Messages are
append-only: the engine never mutates a conversation and the tool loop only
appends assistant and tool turns.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union

from convoy.core.models import ModelRef
from convoy.errors import ProtocolViolation


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    """An image by URL or inline base64 ``data`` with its MIME type."""
    url: str = ""
    data: str = ""
    mime_type: str = "image/png"

    def as_data_url(self) -> str:
        if self.url:
            return self.url
        return f"data:{self.mime_type};base64,{self.data}"

    @classmethod
    def from_data_url(cls, url: str) -> "ImagePart":
        if not url.startswith("data:"):
            return cls(url=url)
        header, data = url.split(",", 1)
        mime = header.split(":", 1)[1].split(";", 1)[0]
        return cls(data=data, mime_type=mime or "image/png")


@dataclass(frozen=True)
class ToolCall:
    """A single tool call requested by the assistant."""
    id: str
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """The answer to one :class:`ToolCall`, matched by ``call_id``."""
    call_id: str
    name: str
    output: Any = ""
    is_error: bool = False

    def output_text(self) -> str:
        """The output as a string suitable for a wire ``content`` field."""
        if isinstance(self.output, str):
            return self.output
        try:
            return json.dumps(self.output, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.output)


Part = Union[TextPart, ImagePart, ToolCall, ToolResult]


@dataclass(frozen=True)
class Message:
    role: Role
    parts: tuple[Part, ...] = ()

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(Role.SYSTEM, (TextPart(text),))

    @classmethod
    def user(cls, text: str, *images: ImagePart) -> "Message":
        return cls(Role.USER, (TextPart(text), *images))

    @classmethod
    def assistant(cls, text: str = "", tool_calls: list[ToolCall] | tuple[ToolCall, ...] = ()) -> "Message":
        parts: list[Part] = [TextPart(text)] if text else []
        parts.extend(tool_calls)
        return cls(Role.ASSISTANT, tuple(parts))

    @classmethod
    def tool(cls, results: list[ToolResult] | tuple[ToolResult, ...]) -> "Message":
        return cls(Role.TOOL, tuple(results))

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def images(self) -> list[ImagePart]:
        return [p for p in self.parts if isinstance(p, ImagePart)]

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.parts if isinstance(p, ToolCall)]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [p for p in self.parts if isinstance(p, ToolResult)]


@dataclass(frozen=True)
class ToolDefinition:
    """A tool advertised to the model, with a JSON-Schema ``parameters``."""
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class Conversation:
    """Ordered messages plus the per-call knobs the engine needs."""
    model: ModelRef
    messages: list[Message] = field(default_factory=list)
    stream: bool = True
    max_tool_depth: int | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None

    def append(self, message: Message) -> None:
        self.messages.append(message)

    @property
    def has_images(self) -> bool:
        return any(m.images for m in self.messages)

    def check_tool_pairing(self) -> None:
        """Raise :class:`ProtocolViolation` unless every tool call is answered.

        Each assistant turn carrying tool calls must be followed by a tool
        turn whose results match the calls one-for-one by id.
        """
        outstanding: list[str] = []
        for index, message in enumerate(self.messages):
            if message.role == Role.TOOL:
                answered = [r.call_id for r in message.tool_results]
                if Counter(answered) != Counter(outstanding):
                    raise ProtocolViolation(
                        f"Tool turn at position {index} answers {len(answered)} call(s) "
                        f"{answered} but {len(outstanding)} were outstanding {outstanding}"
                    )
                outstanding = []
                continue
            if outstanding:
                raise ProtocolViolation(
                    f"{len(outstanding)} tool call(s) {outstanding} have no results "
                    f"before the {message.role} message at position {index}"
                )
            if message.role == Role.ASSISTANT:
                ids = [c.id for c in message.tool_calls]
                check_unique_call_ids(ids)
                outstanding = ids
        if outstanding:
            raise ProtocolViolation(
                f"{len(outstanding)} tool call(s) {outstanding} have no results"
            )


def check_unique_call_ids(ids: list[str]) -> None:
    duplicates = [i for i, n in Counter(ids).items() if n > 1]
    if duplicates:
        raise ProtocolViolation(f"Duplicate tool call id(s) in one assistant turn: {duplicates}")


@dataclass
class Usage:
    """Token accounting for one or more turns; additive with ``+``."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cache_read_tokens: int = 0
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
        )


@dataclass(frozen=True)
class Finished:
    """The model answered with text and requested no tools."""
    text: str
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = "stop"


@dataclass(frozen=True)
class ToolCallsRequested:
    """The model requested tools; ``text`` is any preamble it produced."""
    calls: tuple[ToolCall, ...]
    text: str = ""
    usage: Usage = field(default_factory=Usage)


CompletionOutcome = Union[Finished, ToolCallsRequested]


def outcome_from_parts(
    text: str,
    calls: list[ToolCall],
    usage: Usage,
    finish_reason: str = "stop",
) -> CompletionOutcome:
    """Build the two-variant outcome shared by buffered and streaming mode."""
    if calls:
        check_unique_call_ids([c.id for c in calls])
        return ToolCallsRequested(calls=tuple(calls), text=text, usage=usage)
    return Finished(text=text, usage=usage, finish_reason=finish_reason)
