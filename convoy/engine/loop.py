"""
convoy.engine.loop - The tool-execution loop.

Calls the model, executes whatever tools it requests, feeds the results
back and repeats until the model answers with plain text:

    AwaitingResponse -> Finished
    AwaitingResponse -> ToolCallsPending -> ExecutingTools -> AwaitingResponse

Every tool call is executed exactly once and all results of a turn are
appended as one tool message, in call order, before the next request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from convoy.cancellation import CancellationToken, check, guarded
from convoy.config import DEFAULT_MAX_TOOL_DEPTH, DEFAULT_TOOL_TIMEOUT
from convoy.core.cost import CostTracker
from convoy.core.messages import (
    Conversation,
    Finished,
    Message,
    ToolCall,
    ToolResult,
    Usage,
)
from convoy.core.models import ModelSpec
from convoy.engine.completion import CompletionEngine, DeltaCallback
from convoy.errors import (
    ConfigurationError,
    EmptyResponseError,
    OperationCancelled,
    ProtocolViolation,
    RecursionLimitExceeded,
)

logger = logging.getLogger("convoy.engine.loop")

# A tool executor receives one call and returns a ToolResult or a plain
# value (wrapped into a successful result).
ToolExecutor = Callable[[ToolCall], Awaitable[Any]]


@dataclass
class LoopResult:
    """Final answer of a tool loop run."""
    text: str
    usage: Usage
    turns: int
    conversation: Conversation
    tool_calls: int = 0


class ToolExecutionLoop:
    """
    Runs a conversation to completion, executing requested tools.

    Parameters
    ----------
    engine :
        The completion engine for the conversation's provider.
    executor :
        Async callable that runs one :class:`ToolCall`. Exceptions and
        timeouts become error results the model can react to.
    max_depth :
        Tool rounds allowed before :class:`RecursionLimitExceeded`;
        ``conversation.max_tool_depth`` takes precedence when set.
    parallel_tools :
        Run the calls of one turn concurrently instead of in order.
    """

    def __init__(
        self,
        engine: CompletionEngine,
        executor: ToolExecutor,
        *,
        max_depth: int = DEFAULT_MAX_TOOL_DEPTH,
        tool_timeout: float | None = DEFAULT_TOOL_TIMEOUT,
        parallel_tools: bool = False,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.engine = engine
        self.executor = executor
        if max_depth < 0:
            raise ConfigurationError(f"max_depth must not be negative, got {max_depth}")
        self.max_depth = max_depth
        self.tool_timeout = tool_timeout
        self.parallel_tools = parallel_tools
        self.cost_tracker = cost_tracker

    async def run(
        self,
        conversation: Conversation,
        spec: ModelSpec,
        *,
        token: CancellationToken | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> LoopResult:
        limit = self.max_depth if conversation.max_tool_depth is None else conversation.max_tool_depth
        if limit < 0:
            raise ConfigurationError(f"max_tool_depth must not be negative, got {limit}")
        usage = Usage()
        turns = 0
        depth = 0
        executed = 0

        while True:
            outcome = await self.engine.complete(conversation, spec, token=token, on_delta=on_delta)
            turns += 1
            usage = usage + outcome.usage
            if self.cost_tracker is not None:
                self.cost_tracker.record(outcome.usage, spec)

            if isinstance(outcome, Finished):
                if not outcome.text:
                    raise EmptyResponseError(
                        f"Model '{spec.provider}:{spec.model_id}' produced no usable output "
                        f"(no text and no tool calls) on turn {turns}"
                    )
                conversation.append(Message.assistant(outcome.text))
                logger.debug("Tool loop finished after %d turn(s), %d tool call(s)", turns, executed)
                return LoopResult(outcome.text, usage, turns, conversation, executed)

            if depth >= limit:
                raise RecursionLimitExceeded(turns, limit)

            # preamble text stays in the assistant turn alongside its calls
            conversation.append(Message.assistant(outcome.text, outcome.calls))
            logger.debug(
                "Turn %d requested %d tool(s): %s",
                turns, len(outcome.calls), ", ".join(c.name for c in outcome.calls),
            )
            check(token)
            results = await self._execute_tools(list(outcome.calls), token)
            conversation.append(Message.tool(results))
            depth += 1
            executed += len(results)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute_tools(
        self,
        calls: list[ToolCall],
        token: CancellationToken | None,
    ) -> list[ToolResult]:
        """Execute one turn's calls; results come back in call order."""
        if self.parallel_tools and len(calls) > 1:
            return list(await asyncio.gather(
                *(self._execute_single_tool(call, token) for call in calls)
            ))
        results = []
        for call in calls:
            results.append(await self._execute_single_tool(call, token))
        return results

    async def _execute_single_tool(self, call: ToolCall, token: CancellationToken | None) -> ToolResult:
        """Execute a single tool call, converting failures into error results."""
        start_time = time.monotonic()
        try:
            value = await guarded(token, asyncio.wait_for(self.executor(call), self.tool_timeout))
        except OperationCancelled:
            raise
        except TimeoutError:
            logger.warning("Tool %s (%s) timed out after %.1fs", call.name, call.id, self.tool_timeout)
            return ToolResult(
                call.id, call.name,
                f"Error: tool '{call.name}' timed out after {self.tool_timeout:g}s",
                is_error=True,
            )
        except Exception as exc:
            logger.warning("Tool %s (%s) failed: %s", call.name, call.id, exc)
            return ToolResult(
                call.id, call.name,
                f"Error: {exc.__class__.__name__}: {exc}",
                is_error=True,
            )

        logger.debug("Tool %s (%s) completed in %.2fs", call.name, call.id, time.monotonic() - start_time)
        if isinstance(value, ToolResult):
            if value.call_id != call.id:
                raise ProtocolViolation(
                    f"Executor answered tool call '{call.id}' with a result for '{value.call_id}'"
                )
            return value
        return ToolResult(call.id, call.name, value)
