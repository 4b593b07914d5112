"""Message, usage and model types shared with the completion layer.

Pydantic models with snake_case fields and camelCase aliases, so entries
round-trip through JSON written by other tools.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ThinkingLevel = Literal["minimal", "low", "medium", "high", "xhigh"]

StopReason = Literal["stop", "length", "tool_use", "error", "aborted"]

# --- Content blocks ---


class TextContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["text"] = "text"
    text: str


class ThinkingContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["thinking"] = "thinking"
    thinking: str


class ImageContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["image"] = "image"
    data: str  # base64 encoded
    mime_type: str = Field(default="image/png", alias="mimeType")


class ToolCall(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


# --- Usage ---


class Usage(BaseModel):
    """Token usage reported by the provider for one response."""

    model_config = ConfigDict(populate_by_name=True)

    input: int = 0
    output: int = 0
    cache_read: int = Field(default=0, alias="cacheRead")
    cache_write: int = Field(default=0, alias="cacheWrite")
    total_tokens: int = Field(default=0, alias="totalTokens")


# --- Messages ---

UserContentItem = TextContent | ImageContent
AssistantContentItem = TextContent | ThinkingContent | ToolCall
ToolResultContentItem = TextContent | ImageContent


class UserMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Literal["user"] = "user"
    content: str | list[UserContentItem]
    timestamp: int = 0  # Unix timestamp in milliseconds


class AssistantMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Literal["assistant"] = "assistant"
    content: list[AssistantContentItem] = Field(default_factory=list)
    api: str = ""
    provider: str = ""
    model: str = ""
    usage: Usage = Field(default_factory=Usage)
    stop_reason: StopReason = Field(default="stop", alias="stopReason")
    error_message: str | None = Field(default=None, alias="errorMessage")
    timestamp: int = 0


class ToolResultMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Literal["tool_result"] = "tool_result"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    content: list[ToolResultContentItem] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")
    timestamp: int = 0


Message = UserMessage | AssistantMessage | ToolResultMessage


class Context(BaseModel):
    """Everything sent to the model for one request."""

    model_config = ConfigDict(populate_by_name=True)

    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    messages: list[Message] = Field(default_factory=list)


# --- Model ---


class Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    api: str
    provider: str
    base_url: str = Field(default="", alias="baseUrl")
    reasoning: bool = False
    context_window: int = Field(default=0, alias="contextWindow")
    max_tokens: int = Field(default=0, alias="maxTokens")


# --- Request options ---


class StreamOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temperature: float | None = None
    max_tokens: int | None = Field(default=None, alias="maxTokens")
    api_key: str | None = Field(default=None, alias="apiKey")
    headers: dict[str, str] | None = None


class SimpleStreamOptions(StreamOptions):
    """Request options with a provider-neutral reasoning level."""

    reasoning: ThinkingLevel | None = None
