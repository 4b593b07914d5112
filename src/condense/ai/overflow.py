"""Context overflow detection across providers."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from condense.ai.types import AssistantMessage

_OVERFLOW_PATTERNS: list[re.Pattern[str]] = [
    # Anthropic
    re.compile(r"prompt is too long", re.IGNORECASE),
    re.compile(r"exceeds the model's maximum context", re.IGNORECASE),
    # OpenAI
    re.compile(r"maximum context length", re.IGNORECASE),
    re.compile(r"context_length_exceeded", re.IGNORECASE),
    # Google
    re.compile(r"exceeds the maximum number of tokens", re.IGNORECASE),
    re.compile(r"Request payload size exceeds the limit", re.IGNORECASE),
    # xAI / Groq / general
    re.compile(r"token limit", re.IGNORECASE),
    re.compile(r"too many tokens", re.IGNORECASE),
    # Cerebras / Mistral
    re.compile(r"context window", re.IGNORECASE),
    re.compile(r"context.?length", re.IGNORECASE),
    re.compile(r"input.*too long", re.IGNORECASE),
]


def get_overflow_patterns() -> list[re.Pattern[str]]:
    return list(_OVERFLOW_PATTERNS)


def is_context_overflow(message: AssistantMessage, context_window: int = 0) -> bool:
    """Detect whether the provider rejected (or silently truncated) an oversized request.

    Error responses are matched against known provider messages. Providers
    that accept the request but report more input tokens than the window
    holds are treated as overflow too.
    """
    if message.stop_reason == "error" and message.error_message:
        for pattern in _OVERFLOW_PATTERNS:
            if pattern.search(message.error_message):
                return True

    if context_window > 0 and message.stop_reason == "stop":
        return message.usage.input + message.usage.cache_read > context_window

    return False
