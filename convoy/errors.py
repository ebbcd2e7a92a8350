"""
convoy.errors - Exception hierarchy for the completion engine.

Every error carries enough context (endpoint, model, offending fragment)
to be actionable, and every message passes through :func:`redact` so API
keys registered with :func:`register_secret` never reach logs or tracebacks.
"""

from __future__ import annotations

import re
import threading

_SECRETS: set[str] = set()
_SECRETS_LOCK = threading.Lock()

# Query-string credentials some providers accept (Gemini's ``?key=``)
_QUERY_KEY_RE = re.compile(r"([?&](?:key|api_key|apikey|token)=)[^&\s]+", re.IGNORECASE)

_FRAGMENT_LIMIT = 200


def register_secret(secret: str | None) -> None:
    """Remember *secret* so it is masked in every error message."""
    if secret and len(secret) >= 4:
        with _SECRETS_LOCK:
            _SECRETS.add(secret)


def redact(text: str) -> str:
    """Mask registered secrets and credential query parameters in *text*."""
    if not text:
        return text
    with _SECRETS_LOCK:
        secrets = sorted(_SECRETS, key=len, reverse=True)
    for secret in secrets:
        text = text.replace(secret, "***")
    return _QUERY_KEY_RE.sub(r"\1***", text)


def excerpt(text: str | bytes | None, limit: int = _FRAGMENT_LIMIT) -> str:
    """Short, redacted preview of a payload fragment for error context."""
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = redact(text)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class ConvoyError(Exception):
    """Base exception for all convoy errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(redact(message))
        self.hint = redact(hint) if hint else None


class ConfigurationError(ConvoyError):
    """Unresolved model, unknown provider, or invalid/conflicting options."""


class TransportError(ConvoyError):
    """Connection failure, timeout or non-success HTTP status.

    ``endpoint`` never includes the query string, so credentials passed as
    query parameters cannot leak through it.
    """

    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        status_code: int | None = None,
        model: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.endpoint = redact(endpoint.split("?", 1)[0])
        self.status_code = status_code
        self.model = model
        super().__init__(message, hint=hint)

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code in (408, 425, 429) or self.status_code >= 500


class CatalogFetchError(TransportError):
    """The model catalog source could not be fetched."""


class DecodeError(ConvoyError):
    """Malformed stream framing or JSON payload."""

    def __init__(self, message: str, *, fragment: str | bytes | None = None, hint: str | None = None) -> None:
        self.fragment = excerpt(fragment)
        if self.fragment:
            message = f"{message} (near: {self.fragment!r})"
        super().__init__(message, hint=hint)


class CatalogDecodeError(DecodeError):
    """The model catalog document is not valid JSON of the expected shape."""


class ProtocolViolation(ConvoyError):
    """The tool-call protocol or stream protocol was broken."""


class EmptyResponseError(ProtocolViolation):
    """The model produced neither text nor tool calls."""


class RecursionLimitExceeded(ConvoyError):
    """The model kept requesting tools past the configured depth."""

    def __init__(self, turns: int, limit: int) -> None:
        self.turns = turns
        self.limit = limit
        super().__init__(
            f"Tool-call recursion limit of {limit} exceeded after {turns} model turns",
            hint="Raise max_tool_depth or check for a tool the model keeps retrying.",
        )


class OperationCancelled(ConvoyError):
    """Cooperative cancellation was observed at a suspension point.

    ``partial_text`` holds whatever text had already been delivered to the
    caller before cancellation; it is informational and never retracted.
    """

    def __init__(self, message: str = "Operation cancelled", *, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text


__all__ = [
    "CatalogDecodeError",
    "CatalogFetchError",
    "ConfigurationError",
    "ConvoyError",
    "DecodeError",
    "EmptyResponseError",
    "OperationCancelled",
    "ProtocolViolation",
    "RecursionLimitExceeded",
    "TransportError",
    "excerpt",
    "redact",
    "register_secret",
]
