"""
convoy.engine - Completion execution: streaming decode, single requests and
the tool-call loop.
"""

from convoy.engine.completion import CompletionEngine
from convoy.engine.loop import LoopResult, ToolExecutionLoop, ToolExecutor
from convoy.engine.stream import (
    NDJSONParser,
    SSEParser,
    StreamDecoder,
    ToolCallAssembler,
)

__all__ = [
    "CompletionEngine",
    "LoopResult",
    "NDJSONParser",
    "SSEParser",
    "StreamDecoder",
    "ToolCallAssembler",
    "ToolExecutionLoop",
    "ToolExecutor",
]
