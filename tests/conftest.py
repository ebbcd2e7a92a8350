"""Pytest configuration and fixtures.

Provides environment isolation, model specs, and helpers for faking
provider HTTP traffic with ``httpx.MockTransport``.
"""

from __future__ import annotations

import json
import os
from typing import Any, AsyncIterator, Callable

import httpx
import pytest
import pytest_asyncio

from convoy.core.models import Capabilities, ModelSpec, Pricing, TokenLimits


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep real credentials and CONVOY_* settings out of every test."""
    for name in list(os.environ):
        if (
            name.startswith("CONVOY_")
            or name.endswith("_API_KEY")
            or name.endswith("_BASE_URL")
            or name == "OLLAMA_HOST"
        ):
            monkeypatch.delenv(name, raising=False)


# =============================================================================
# Model specs
# =============================================================================


def build_spec(provider: str = "openai", model_id: str = "gpt-test", **caps: Any) -> ModelSpec:
    capabilities = {"accepts_images": True, "accepts_tool_calls": True, "accepts_temperature": True}
    capabilities.update(caps)
    return ModelSpec(
        provider=provider,
        model_id=model_id,
        display_name=model_id,
        capabilities=Capabilities(**capabilities),
        limits=TokenLimits(max_input=128_000, max_output=8_192),
        pricing=Pricing(input=2.5, output=10.0, cache_read=1.25),
    )


@pytest.fixture
def spec_factory() -> Callable[..., ModelSpec]:
    return build_spec


@pytest.fixture
def chat_spec() -> ModelSpec:
    return build_spec()


# =============================================================================
# Wire helpers
# =============================================================================


def sse(*events: Any) -> bytes:
    """Encode events as an SSE body.

    Each event is a JSON-able dict, an ``(event_name, dict)`` tuple, or the
    literal ``"[DONE]"``.
    """
    out = []
    for event in events:
        if event == "[DONE]":
            out.append("data: [DONE]\n\n")
        elif isinstance(event, tuple):
            name, data = event
            out.append(f"event: {name}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n")
        else:
            out.append(f"data: {json.dumps(event, ensure_ascii=False)}\n\n")
    return "".join(out).encode("utf-8")


def ndjson(*lines: dict[str, Any]) -> bytes:
    return "".join(json.dumps(line, ensure_ascii=False) + "\n" for line in lines).encode("utf-8")


async def chunked(data: bytes, size: int):
    """Yield *data* in pieces of *size* bytes."""
    for start in range(0, len(data), size):
        yield data[start:start + size]


@pytest.fixture
def wire() -> Any:
    class Wire:
        sse = staticmethod(sse)
        ndjson = staticmethod(ndjson)
        chunked = staticmethod(chunked)
    return Wire


@pytest_asyncio.fixture
async def mock_http() -> AsyncIterator[Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]]:
    """Build AsyncClients whose requests go to *handler*; closed after the test."""
    clients: list[httpx.AsyncClient] = []

    def build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield build
    for client in clients:
        await client.aclose()
