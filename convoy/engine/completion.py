"""
convoy.engine.completion - Drive one completion request.

One call to :meth:`CompletionEngine.complete` sends one provider request in
either buffered or streaming mode and returns a
:class:`~convoy.core.messages.CompletionOutcome`. Both modes produce the same
text and the same tool calls for the same underlying response.

Errors are reported, never retried here: the caller owns retry policy.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

import httpx

from convoy.adapters.base import ProviderAdapter, WireRequest
from convoy.cancellation import CancellationToken, check, guarded
from convoy.core.events import DONE, TEXT_DELTA, TOOL_CALL
from convoy.core.messages import (
    CompletionOutcome,
    Conversation,
    ToolCall,
    Usage,
    outcome_from_parts,
)
from convoy.core.models import ModelSpec
from convoy.engine.stream import StreamDecoder
from convoy.errors import DecodeError, TransportError, excerpt

logger = logging.getLogger("convoy.engine.completion")

# ---------------------------------------------------------------------------
# Performance constants
# ---------------------------------------------------------------------------
# Granular timeouts: fast connect, generous read for streaming
_CONNECT_TIMEOUT = 10.0    # TCP + TLS handshake (seconds)
_WRITE_TIMEOUT = 30.0      # Request body upload
_POOL_TIMEOUT = 10.0       # Waiting for a connection from the pool

# Connection pool limits: keep connections alive to skip TLS on later requests
_POOL_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=120,  # seconds
)

DeltaCallback = Callable[[str], Any]


def _timeout(read: float) -> httpx.Timeout:
    return httpx.Timeout(
        connect=_CONNECT_TIMEOUT,
        read=read,
        write=_WRITE_TIMEOUT,
        pool=_POOL_TIMEOUT,
    )


class CompletionEngine:
    """
    Sends conversations to one provider through its adapter.

    The engine holds a pooled ``httpx.AsyncClient``; pass ``http_client`` to
    share one (or to inject a mock transport in tests). An injected client is
    not closed by :meth:`close`.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.adapter = adapter
        self.decoder = StreamDecoder(adapter)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=_timeout(adapter.settings.timeout),
            limits=_POOL_LIMITS,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CompletionEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def complete(
        self,
        conversation: Conversation,
        spec: ModelSpec,
        *,
        token: CancellationToken | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> CompletionOutcome:
        """
        Send *conversation* once and return the model's outcome.

        ``on_delta`` receives each text delta as it arrives (streaming) or
        the whole text once (buffered). The conversation is not modified.
        """
        check(token)
        conversation.check_tool_pairing()
        self.adapter.check_credentials()

        request = self.adapter.build_request(conversation, spec, stream=conversation.stream)
        logger.debug(
            "Completion request: provider=%s model=%s messages=%d tools=%d stream=%s",
            self.adapter.provider, spec.model_id, len(conversation.messages),
            len(conversation.tools), conversation.stream,
        )

        if conversation.stream:
            outcome = await self._complete_streaming(request, spec, token, on_delta)
        else:
            outcome = await self._complete_buffered(request, spec, token, on_delta)

        logger.debug(
            "Completion finished: provider=%s model=%s outcome=%s prompt_tokens=%d completion_tokens=%d",
            self.adapter.provider, spec.model_id, type(outcome).__name__,
            outcome.usage.prompt_tokens, outcome.usage.completion_tokens,
        )
        return outcome

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _complete_buffered(
        self,
        request: WireRequest,
        spec: ModelSpec,
        token: CancellationToken | None,
        on_delta: DeltaCallback | None,
    ) -> CompletionOutcome:
        endpoint = self._endpoint(request)
        http_request = self._build_http_request(request)
        try:
            resp = await guarded(token, self._client.send(http_request))
        except httpx.HTTPError as exc:
            raise self._transport_error(exc, endpoint, spec) from exc

        if not resp.is_success:
            raise self._status_error(resp, endpoint, spec)

        try:
            data = json.loads(resp.content)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(
                f"Invalid JSON in {self.adapter.provider} response: {exc}",
                fragment=resp.content,
            ) from exc

        outcome = self.adapter.parse_response(data)
        if on_delta is not None and outcome.text:
            on_delta(outcome.text)
        return outcome

    async def _complete_streaming(
        self,
        request: WireRequest,
        spec: ModelSpec,
        token: CancellationToken | None,
        on_delta: DeltaCallback | None,
    ) -> CompletionOutcome:
        endpoint = self._endpoint(request)
        http_request = self._build_http_request(request)
        try:
            resp = await guarded(token, self._client.send(http_request, stream=True))
        except httpx.HTTPError as exc:
            raise self._transport_error(exc, endpoint, spec) from exc

        text_parts: list[str] = []
        calls: list[ToolCall] = []
        usage = Usage()
        finish_reason = "stop"
        try:
            if not resp.is_success:
                try:
                    await guarded(token, resp.aread())
                except httpx.HTTPError:
                    pass  # the status is the error being reported
                raise self._status_error(resp, endpoint, spec)

            async for event in self.decoder.decode(resp.aiter_bytes(), token):
                if event.type == TEXT_DELTA:
                    text_parts.append(event.text)
                    if on_delta is not None:
                        on_delta(event.text)
                elif event.type == TOOL_CALL and event.tool_call is not None:
                    calls.append(event.tool_call)
                elif event.type == DONE:
                    usage = event.usage or usage
                    finish_reason = event.finish_reason or finish_reason
        except httpx.HTTPError as exc:
            raise self._transport_error(exc, endpoint, spec) from exc
        finally:
            await resp.aclose()

        return outcome_from_parts("".join(text_parts), calls, usage, finish_reason)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _endpoint(self, request: WireRequest) -> str:
        return f"{self.adapter.base_url}{request.path}"

    def _build_http_request(self, request: WireRequest) -> httpx.Request:
        return self._client.build_request(
            request.method,
            self._endpoint(request),
            json=request.body,
            headers=request.headers,
            params=request.params or None,
        )

    def _transport_error(self, exc: httpx.HTTPError, endpoint: str, spec: ModelSpec) -> TransportError:
        if isinstance(exc, httpx.TimeoutException):
            message = f"Request to {self.adapter.provider} timed out ({exc.__class__.__name__})"
        else:
            message = f"Request to {self.adapter.provider} failed: {exc.__class__.__name__}: {exc}"
        return TransportError(
            message,
            endpoint=endpoint,
            model=spec.model_id,
            hint=self.adapter.error_hint(None, "", spec.model_id),
        )

    def _status_error(self, resp: httpx.Response, endpoint: str, spec: ModelSpec) -> TransportError:
        try:
            body = resp.text
        except httpx.ResponseNotRead:
            body = ""
        logger.warning(
            "%s returned HTTP %d for model %s", self.adapter.provider, resp.status_code, spec.model_id,
        )
        return TransportError(
            f"{self.adapter.provider} returned HTTP {resp.status_code} for model "
            f"'{spec.model_id}': {excerpt(body)}",
            endpoint=endpoint,
            status_code=resp.status_code,
            model=spec.model_id,
            hint=self.adapter.error_hint(resp.status_code, body, spec.model_id),
        )
