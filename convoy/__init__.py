"""
convoy - One conversation API across LLM providers.

Normalizes provider wire formats into one message model, drives buffered
and streamed completions, runs the tool-call loop and threads cooperative
cancellation through every suspension point.
"""

from pathlib import Path
import tomllib
from importlib.metadata import version, PackageNotFoundError

from convoy.cancellation import CancellationToken
from convoy.catalog import ModelCatalog
from convoy.client import Client
from convoy.config import ConvoyConfig
from convoy.core import (
    Conversation,
    Finished,
    ImagePart,
    Message,
    ModelRef,
    ModelSpec,
    ToolCall,
    ToolCallsRequested,
    ToolDefinition,
    ToolResult,
    Usage,
)
from convoy.engine import CompletionEngine, LoopResult, ToolExecutionLoop
from convoy.errors import (
    ConfigurationError,
    ConvoyError,
    DecodeError,
    OperationCancelled,
    ProtocolViolation,
    RecursionLimitExceeded,
    TransportError,
)


def _resolve_version() -> str:
    """Resolve the convoy version.

    Priority:
    1) Local source checkout version from pyproject.toml (if present)
    2) Installed package metadata
    3) Safe fallback
    """
    root = Path(__file__).resolve().parent.parent
    pyproject = root / "pyproject.toml"
    try:
        if pyproject.exists():
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
            ver = data.get("project", {}).get("version")
            if isinstance(ver, str) and ver.strip():
                return ver.strip()
    except (OSError, tomllib.TOMLDecodeError):
        pass

    try:
        return version("convoy")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _resolve_version()

__all__ = [
    "CancellationToken",
    "Client",
    "CompletionEngine",
    "ConfigurationError",
    "Conversation",
    "ConvoyConfig",
    "ConvoyError",
    "DecodeError",
    "Finished",
    "ImagePart",
    "LoopResult",
    "Message",
    "ModelCatalog",
    "ModelRef",
    "ModelSpec",
    "OperationCancelled",
    "ProtocolViolation",
    "RecursionLimitExceeded",
    "ToolCall",
    "ToolCallsRequested",
    "ToolDefinition",
    "ToolExecutionLoop",
    "ToolResult",
    "TransportError",
    "Usage",
    "__version__",
]
