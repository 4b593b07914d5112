"""Token accounting: reported usage and character-based estimates."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from condense.ai.types import (
    AssistantMessage,
    ImageContent,
    TextContent,
    ThinkingContent,
    ToolCall,
    ToolResultMessage,
    UserMessage,
)
from condense.context.messages import (
    BashExecutionMessage,
    BranchSummaryMessage,
    CompactionSummaryMessage,
    CustomMessage,
)
from condense.context.sessions import (
    BranchSummaryEntry,
    CompactionEntry,
    CustomEntry,
    CustomMessageEntry,
    LabelEntry,
    ModelChangeEntry,
    SessionMessageEntry,
    ThinkingLevelChangeEntry,
)

if TYPE_CHECKING:
    from condense.ai.types import Usage
    from condense.context.messages import AgentMessage
    from condense.context.sessions import SessionEntry

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
IMAGE_ESTIMATED_CHARS = 4800  # ~1,200 tokens at 4 chars/token

# Entries that are known to contribute nothing to the model context.
_CONTEXT_FREE_ENTRIES = (ThinkingLevelChangeEntry, ModelChangeEntry, CustomEntry, LabelEntry)


@dataclass
class ContextUsageEstimate:
    """Token usage estimate for the current context."""

    tokens: int = 0
    usage_tokens: int = 0
    trailing_tokens: int = 0
    last_usage_index: int | None = None


# --- Reported usage ---


def calculate_context_tokens(usage: Usage) -> int:
    """Context size implied by a response's usage.

    Prefers the provider's own total and falls back to summing the parts.
    """
    if usage.total_tokens:
        return usage.total_tokens
    return usage.input + usage.output + usage.cache_read + usage.cache_write


def _valid_usage(message: AgentMessage) -> Usage | None:
    # Aborted and errored responses carry partial or no usage.
    if isinstance(message, AssistantMessage) and message.stop_reason not in ("aborted", "error"):
        return message.usage
    return None


def get_last_assistant_usage(entries: list[SessionEntry]) -> Usage | None:
    """Usage of the newest assistant message that completed normally."""
    for entry in reversed(entries):
        if isinstance(entry, SessionMessageEntry):
            usage = _valid_usage(entry.message)
            if usage is not None:
                return usage
    return None


# --- Estimation ---


def _chars_to_tokens(chars: int) -> int:
    return math.ceil(chars / CHARS_PER_TOKEN)


def _content_chars(content: str | list) -> int:
    if isinstance(content, str):
        return len(content)
    chars = 0
    for block in content:
        if isinstance(block, TextContent):
            chars += len(block.text)
        elif isinstance(block, ImageContent):
            chars += IMAGE_ESTIMATED_CHARS
    return chars


def estimate_tokens(message: AgentMessage) -> int:
    """Estimate the token cost of one message (chars / 4, rounded up).

    Deliberately conservative. Images count as a flat 1,200 tokens whatever
    their resolution.
    """
    if isinstance(message, UserMessage | ToolResultMessage | CustomMessage):
        return _chars_to_tokens(_content_chars(message.content))

    if isinstance(message, AssistantMessage):
        chars = 0
        for block in message.content:
            if isinstance(block, TextContent):
                chars += len(block.text)
            elif isinstance(block, ThinkingContent):
                chars += len(block.thinking)
            elif isinstance(block, ToolCall):
                chars += len(block.name) + len(json.dumps(block.arguments, separators=(",", ":"), ensure_ascii=False))
        return _chars_to_tokens(chars)

    if isinstance(message, BashExecutionMessage):
        return _chars_to_tokens(len(message.command) + len(message.output))

    if isinstance(message, BranchSummaryMessage | CompactionSummaryMessage):
        return _chars_to_tokens(len(message.summary))

    logger.warning("Cannot estimate tokens for unknown message kind %r; counting 0", getattr(message, "role", message))
    return 0


def estimate_entry_tokens(entry: SessionEntry) -> int:
    """Estimate the token cost an entry adds to the context."""
    if isinstance(entry, SessionMessageEntry):
        return estimate_tokens(entry.message)
    if isinstance(entry, CompactionEntry | BranchSummaryEntry):
        return _chars_to_tokens(len(entry.summary))
    if isinstance(entry, CustomMessageEntry):
        return _chars_to_tokens(_content_chars(entry.content))
    if isinstance(entry, _CONTEXT_FREE_ENTRIES):
        return 0

    logger.warning("Cannot estimate tokens for unknown entry kind %r; counting 0", getattr(entry, "type", entry))
    return 0


def estimate_context_tokens(messages: list[AgentMessage]) -> ContextUsageEstimate:
    """Estimate the current context size.

    Uses the usage reported for the last completed assistant message and
    estimates only the messages that came after it.
    """
    if not messages:
        return ContextUsageEstimate()

    for i in range(len(messages) - 1, -1, -1):
        usage = _valid_usage(messages[i])
        if usage is None:
            continue
        usage_tokens = calculate_context_tokens(usage)
        if not usage_tokens:
            continue
        trailing = sum(estimate_tokens(m) for m in messages[i + 1 :])
        return ContextUsageEstimate(
            tokens=usage_tokens + trailing,
            usage_tokens=usage_tokens,
            trailing_tokens=trailing,
            last_usage_index=i,
        )

    total = sum(estimate_tokens(m) for m in messages)
    return ContextUsageEstimate(tokens=total, trailing_tokens=total)
