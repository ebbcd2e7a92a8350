"""
convoy.core - Canonical data model shared by every layer.
"""

from convoy.core.messages import (
    CompletionOutcome,
    Conversation,
    Finished,
    ImagePart,
    Message,
    Role,
    TextPart,
    ToolCall,
    ToolCallsRequested,
    ToolDefinition,
    ToolResult,
    Usage,
)
from convoy.core.models import (
    Capabilities,
    ModelRef,
    ModelSpec,
    ModelType,
    Pricing,
    ProviderModels,
    TokenLimits,
)

__all__ = [
    "Capabilities",
    "CompletionOutcome",
    "Conversation",
    "Finished",
    "ImagePart",
    "Message",
    "ModelRef",
    "ModelSpec",
    "ModelType",
    "Pricing",
    "ProviderModels",
    "Role",
    "TextPart",
    "TokenLimits",
    "ToolCall",
    "ToolCallsRequested",
    "ToolDefinition",
    "ToolResult",
    "Usage",
]
