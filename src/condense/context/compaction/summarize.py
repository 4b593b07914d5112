"""Summary generation for discarded history and split-turn prefixes."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from condense.ai.complete import complete_simple
from condense.ai.types import (
    AssistantMessage,
    Context,
    ImageContent,
    SimpleStreamOptions,
    TextContent,
    ThinkingContent,
    ToolCall,
    ToolResultMessage,
    UserMessage,
)
from condense.context.compaction.errors import CompactionAbortedError, SummarizationError
from condense.context.compaction.prompts import (
    SUMMARIZATION_PROMPT,
    SUMMARIZATION_SYSTEM_PROMPT,
    TURN_PREFIX_SUMMARIZATION_PROMPT,
    UPDATE_SUMMARIZATION_PROMPT,
)
from condense.context.messages import convert_to_llm

if TYPE_CHECKING:
    import asyncio

    from condense.ai.types import Message, Model, ThinkingLevel
    from condense.context.messages import AgentMessage

logger = logging.getLogger(__name__)

SUMMARY_BUDGET_RATIO = 0.8
TURN_PREFIX_BUDGET_RATIO = 0.5
MAX_TOOL_ARGS_CHARS = 500


# --- Serialization ---


def _truncate_args(args: Any, max_len: int = MAX_TOOL_ARGS_CHARS) -> str:
    text = json.dumps(args, ensure_ascii=False)
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


def _serialize_blocks(content: str | list) -> list[str]:
    if isinstance(content, str):
        return [content]
    parts: list[str] = []
    for block in content:
        if isinstance(block, TextContent):
            parts.append(block.text)
        elif isinstance(block, ThinkingContent):
            parts.append(f"<thinking>{block.thinking}</thinking>")
        elif isinstance(block, ToolCall):
            parts.append(f"<tool_call name='{block.name}'>{_truncate_args(block.arguments)}</tool_call>")
        elif isinstance(block, ImageContent):
            parts.append("[image]")
    return parts


def serialize_conversation(messages: list[Message]) -> str:
    """Render LLM messages as plain text for the summarizer.

    Sending history as text keeps the summarizer from treating it as a
    conversation to continue, and sidesteps provider rules about tool-call
    and tool-result pairing.
    """
    parts: list[str] = []
    for msg in messages:
        if isinstance(msg, ToolResultMessage):
            header = f"[tool_result {msg.tool_name}{' error' if msg.is_error else ''}]"
        else:
            header = f"[{msg.role}]"
        body = _serialize_blocks(msg.content)
        if body:
            parts.append(header + "\n" + "\n".join(body))
    return "\n\n".join(parts)


# --- Completion ---


def _response_text(response: AssistantMessage, what: str) -> str:
    if response.stop_reason == "aborted":
        raise CompactionAbortedError()
    if response.stop_reason not in ("stop", "length"):
        raise SummarizationError(f"{what} failed: {response.error_message or 'Unknown error'}")
    return "\n".join(block.text for block in response.content if isinstance(block, TextContent))


async def _request_summary(
    prompt: str,
    model: Model,
    max_tokens: int,
    *,
    reasoning: ThinkingLevel | None,
    api_key: str | None,
    abort_event: asyncio.Event | None,
    what: str,
) -> str:
    if abort_event is not None and abort_event.is_set():
        raise CompactionAbortedError()

    context = Context(
        system_prompt=SUMMARIZATION_SYSTEM_PROMPT,
        messages=[UserMessage(content=[TextContent(text=prompt)], timestamp=int(time.time() * 1000))],
    )
    options = SimpleStreamOptions(max_tokens=max_tokens, api_key=api_key, reasoning=reasoning if model.reasoning else None)

    logger.debug("Requesting %s from %s/%s (max_tokens=%d)", what, model.provider, model.id, max_tokens)
    response = await complete_simple(model, context, options, abort_event=abort_event)
    return _response_text(response, what)


async def generate_summary(
    messages: list[AgentMessage],
    model: Model,
    reserve_tokens: int,
    *,
    api_key: str | None = None,
    abort_event: asyncio.Event | None = None,
    custom_instructions: str | None = None,
    previous_summary: str | None = None,
) -> str:
    """Summarize discarded messages, merging into ``previous_summary`` if given.

    With a previous summary the update prompt is used, so repeated
    compactions extend one summary instead of re-reading old history.
    """
    conversation = serialize_conversation(convert_to_llm(messages))

    prompt = f"<conversation>\n{conversation}\n</conversation>\n\n"
    if previous_summary:
        prompt += f"<previous-summary>\n{previous_summary}\n</previous-summary>\n\n"
        prompt += UPDATE_SUMMARIZATION_PROMPT
    else:
        prompt += SUMMARIZATION_PROMPT
    if custom_instructions:
        prompt += f"\n\nAdditional focus: {custom_instructions}"

    return await _request_summary(
        prompt,
        model,
        int(reserve_tokens * SUMMARY_BUDGET_RATIO),
        reasoning="high",
        api_key=api_key,
        abort_event=abort_event,
        what="Summarization",
    )


async def generate_turn_prefix_summary(
    messages: list[AgentMessage],
    model: Model,
    reserve_tokens: int,
    *,
    api_key: str | None = None,
    abort_event: asyncio.Event | None = None,
) -> str:
    """Summarize the discarded beginning of a turn whose tail is kept."""
    conversation = serialize_conversation(convert_to_llm(messages))
    prompt = f"<conversation>\n{conversation}\n</conversation>\n\n{TURN_PREFIX_SUMMARIZATION_PROMPT}"

    return await _request_summary(
        prompt,
        model,
        int(reserve_tokens * TURN_PREFIX_BUDGET_RATIO),
        reasoning=None,
        api_key=api_key,
        abort_event=abort_event,
        what="Turn prefix summarization",
    )
