"""condense.ai: message types and the model-completion seam used by compaction."""

from condense.ai.complete import complete_simple
from condense.ai.overflow import get_overflow_patterns, is_context_overflow
from condense.ai.registry import (
    ApiProvider,
    clear_api_providers,
    get_api_provider,
    get_api_providers,
    register_api_provider,
    unregister_api_providers,
)
from condense.ai.types import (
    AssistantMessage,
    Context,
    ImageContent,
    Message,
    Model,
    SimpleStreamOptions,
    StopReason,
    StreamOptions,
    TextContent,
    ThinkingContent,
    ToolCall,
    ToolResultMessage,
    Usage,
    UserMessage,
)

__all__ = [
    "ApiProvider",
    "AssistantMessage",
    "Context",
    "ImageContent",
    "Message",
    "Model",
    "SimpleStreamOptions",
    "StopReason",
    "StreamOptions",
    "TextContent",
    "ThinkingContent",
    "ToolCall",
    "ToolResultMessage",
    "Usage",
    "UserMessage",
    "clear_api_providers",
    "complete_simple",
    "get_api_provider",
    "get_api_providers",
    "get_overflow_patterns",
    "is_context_overflow",
    "register_api_provider",
    "unregister_api_providers",
]
