"""
convoy.core.events - Events flowing out of a streaming response.

Adapters turn one raw wire payload into zero or more events of types:

    ``text_delta``       text to append to the growing output
    ``tool_call_delta``  a fragment of a tool call, keyed by ``key``
    ``usage``            partial or final token accounting
    ``done``             the provider's terminal marker

The stream decoder consumes those and emits ``text_delta``, ``tool_call``
(one complete :class:`ToolCall`) and exactly one final ``done`` carrying the
merged usage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from convoy.core.messages import ToolCall, Usage

TEXT_DELTA = "text_delta"
TOOL_CALL_DELTA = "tool_call_delta"
TOOL_CALL = "tool_call"
USAGE = "usage"
DONE = "done"


@dataclass
class StreamEvent:
    """A single event from a streaming LLM response."""
    type: str
    text: str = ""
    # tool_call_delta: fragments accumulate per key until ``complete``
    key: Any = None
    call_id: str = ""
    name: str = ""
    args_delta: str = ""
    arguments: Any = None
    complete: bool = False
    # tool_call
    tool_call: ToolCall | None = None
    # usage / done
    usage: Usage | None = None
    finish_reason: str = ""

    @classmethod
    def text_delta(cls, text: str) -> "StreamEvent":
        return cls(type=TEXT_DELTA, text=text)

    @classmethod
    def fragment(
        cls,
        key: Any,
        *,
        call_id: str = "",
        name: str = "",
        args_delta: str = "",
        arguments: Any = None,
        complete: bool = False,
    ) -> "StreamEvent":
        return cls(
            type=TOOL_CALL_DELTA,
            key=key,
            call_id=call_id,
            name=name,
            args_delta=args_delta,
            arguments=arguments,
            complete=complete,
        )

    @classmethod
    def usage_update(cls, usage: Usage) -> "StreamEvent":
        return cls(type=USAGE, usage=usage)

    @classmethod
    def done(cls, finish_reason: str = "", usage: Usage | None = None) -> "StreamEvent":
        return cls(type=DONE, finish_reason=finish_reason, usage=usage)
