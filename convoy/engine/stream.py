"""
convoy.engine.stream - Incremental decoding of streamed responses.

Bytes arrive in arbitrary chunks. A framer (:class:`SSEParser` or
:class:`NDJSONParser`) turns them into complete payloads, the provider
adapter turns each payload into canonical events, and the
:class:`ToolCallAssembler` stitches tool-call fragments back together.

UTF-8 is decoded incrementally, so a multi-byte character split across two
reads is held back until its remaining bytes arrive.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterable, AsyncIterator

from convoy.adapters.base import SSE_DONE, RawEvent, parse_arguments
from convoy.cancellation import CancellationToken, guarded
from convoy.core.events import DONE, TEXT_DELTA, TOOL_CALL, TOOL_CALL_DELTA, USAGE, StreamEvent
from convoy.core.messages import ToolCall, Usage
from convoy.errors import DecodeError, ProtocolViolation

if TYPE_CHECKING:
    from convoy.adapters.base import ProviderAdapter

logger = logging.getLogger("convoy.engine.stream")


class _Utf8Framer:
    """Shared incremental UTF-8 decoding and line buffering."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def _decode(self, chunk: bytes, final: bool = False) -> str:
        try:
            return self._decoder.decode(chunk, final)
        except UnicodeDecodeError as exc:
            raise DecodeError(
                f"Stream is not valid UTF-8: {exc.reason}",
                fragment=exc.object[max(exc.start - 40, 0):exc.end + 40],
            ) from exc

    def _lines(self, text: str) -> list[str]:
        """Complete lines from the buffer; the trailing partial line stays buffered."""
        self._buffer += text
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def _remaining(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        return [rest.rstrip("\r")] if rest.strip() else []


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Invalid JSON in stream payload: {exc.msg}", fragment=text) from exc


class SSEParser(_Utf8Framer):
    """Server-sent events framer.

    ``data:`` lines accumulate until a blank line dispatches the event.
    ``event:`` names are kept, comment lines (``:``) and other fields are
    ignored. The ``[DONE]`` sentinel is passed through undecoded.
    """

    def __init__(self) -> None:
        super().__init__()
        self._event = ""
        self._data: list[str] = []

    def feed(self, chunk: bytes) -> list[RawEvent]:
        return self._process(self._lines(self._decode(chunk)))

    def close(self) -> list[RawEvent]:
        """Flush a final event that was not followed by a blank line."""
        lines = self._lines(self._decode(b"", final=True)) + self._remaining()
        events = self._process(lines)
        dispatched = self._dispatch()
        if dispatched is not None:
            events.append(dispatched)
        return events

    def _process(self, lines: list[str]) -> list[RawEvent]:
        events: list[RawEvent] = []
        for line in lines:
            if not line:
                dispatched = self._dispatch()
                if dispatched is not None:
                    events.append(dispatched)
                continue
            if line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "data":
                self._data.append(value)
            elif name == "event":
                self._event = value
        return events

    def _dispatch(self) -> RawEvent | None:
        event, self._event = self._event, ""
        if not self._data:
            return None
        text = "\n".join(self._data)
        self._data = []
        if text.strip() == SSE_DONE:
            return RawEvent(data=SSE_DONE, event=event)
        return RawEvent(data=_load_json(text), event=event)


class NDJSONParser(_Utf8Framer):
    """Newline-delimited JSON framer; blank lines are skipped."""

    def feed(self, chunk: bytes) -> list[RawEvent]:
        return [RawEvent(data=_load_json(line)) for line in self._lines(self._decode(chunk)) if line.strip()]

    def close(self) -> list[RawEvent]:
        lines = self._lines(self._decode(b"", final=True)) + self._remaining()
        return [RawEvent(data=_load_json(line)) for line in lines if line.strip()]


def create_parser(framing: str) -> SSEParser | NDJSONParser:
    if framing == "ndjson":
        return NDJSONParser()
    if framing == "sse":
        return SSEParser()
    raise ValueError(f"Unknown stream framing '{framing}'")


# ---------------------------------------------------------------------------
# Tool-call assembly
# ---------------------------------------------------------------------------

@dataclass
class _PendingCall:
    ordinal: int
    call_id: str = ""
    name: str = ""
    args: list[str] = field(default_factory=list)
    arguments: Any = None


class ToolCallAssembler:
    """Accumulates tool-call fragments by key until each call is complete.

    Fragments with ``key=None`` stand alone (the provider sent the whole call
    at once). Calls without a provider id get ``call_{n}`` where ``n`` is the
    call's first-seen position in the response.
    """

    def __init__(self) -> None:
        self._pending: dict[Any, _PendingCall] = {}
        self._seen = 0

    def add(self, event: StreamEvent) -> ToolCall | None:
        """Absorb one fragment; return the finished call if it completed."""
        key = event.key if event.key is not None else ("anonymous", self._seen)
        pending = self._pending.get(key)
        if pending is None and not (event.call_id or event.name or event.args_delta or event.arguments is not None):
            # a bare completion marker for a block that carried no tool call
            return None
        if pending is None:
            pending = _PendingCall(ordinal=self._seen)
            self._pending[key] = pending
            self._seen += 1
        if event.call_id:
            pending.call_id = event.call_id
        if event.name:
            pending.name = event.name
        if event.args_delta:
            pending.args.append(event.args_delta)
        if event.arguments is not None:
            pending.arguments = event.arguments
        if event.complete:
            return self._finish(key)
        return None

    def finish_all(self) -> list[ToolCall]:
        """Complete every outstanding call, in first-seen order."""
        return [self._finish(key) for key in list(self._pending)]

    def _finish(self, key: Any) -> ToolCall:
        pending = self._pending.pop(key)
        if not pending.name:
            raise ProtocolViolation(f"Tool call #{pending.ordinal} completed without a tool name")
        arguments = pending.arguments
        if arguments is None:
            arguments = parse_arguments("".join(pending.args))
        return ToolCall(
            id=pending.call_id or f"call_{pending.ordinal}",
            name=pending.name,
            arguments=arguments,
        )

    @property
    def outstanding(self) -> int:
        return len(self._pending)


def merge_usage(current: Usage | None, update: Usage | None) -> Usage | None:
    """Field-wise merge: the latest non-zero value wins.

    Providers report usage cumulatively and often split across events
    (input tokens at the start, output tokens at the end).
    """
    if update is None:
        return current
    if current is None:
        return Usage(**vars(update))
    return Usage(
        prompt_tokens=update.prompt_tokens or current.prompt_tokens,
        completion_tokens=update.completion_tokens or current.completion_tokens,
        cache_read_tokens=update.cache_read_tokens or current.cache_read_tokens,
        reasoning_tokens=update.reasoning_tokens or current.reasoning_tokens,
    )


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

class StreamDecoder:
    """Turns a provider byte stream into canonical events.

    The iterator yields ``text_delta`` and ``tool_call`` events followed by
    exactly one ``done`` event carrying the merged usage, then stops. It is
    lazy (never reads past the next chunk), finite and not restartable.
    """

    def __init__(self, adapter: ProviderAdapter) -> None:
        self.adapter = adapter

    async def decode(
        self,
        chunks: AsyncIterable[bytes],
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        parser = create_parser(self.adapter.stream_framing)
        assembler = ToolCallAssembler()
        usage: Usage | None = None
        finish_reason = ""
        delivered: list[str] = []
        iterator = chunks.__aiter__()
        exhausted = False

        while not exhausted:
            try:
                chunk = await guarded(token, iterator.__anext__(), partial_text="".join(delivered))
            except StopAsyncIteration:
                exhausted = True
                raw_events = parser.close()
            else:
                raw_events = parser.feed(chunk)

            for raw in raw_events:
                for event in self.adapter.decode_stream_event(raw):
                    if event.type == TEXT_DELTA:
                        if event.text:
                            delivered.append(event.text)
                            yield event
                    elif event.type == TOOL_CALL_DELTA:
                        call = assembler.add(event)
                        if call is not None:
                            yield StreamEvent(type=TOOL_CALL, tool_call=call)
                    elif event.type == USAGE:
                        usage = merge_usage(usage, event.usage)
                        finish_reason = event.finish_reason or finish_reason
                    elif event.type == DONE:
                        usage = merge_usage(usage, event.usage)
                        finish_reason = event.finish_reason or finish_reason or "stop"
                        for call in assembler.finish_all():
                            yield StreamEvent(type=TOOL_CALL, tool_call=call)
                        logger.debug(
                            "Stream from %s finished (%s), %d text delta(s)",
                            self.adapter.provider, finish_reason, len(delivered),
                        )
                        yield StreamEvent.done(finish_reason, usage or Usage())
                        return

        raise ProtocolViolation(
            f"Stream from provider '{self.adapter.provider}' ended without a terminal marker",
            hint="The connection may have been dropped mid-response.",
        )
