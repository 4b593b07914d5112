"""Agent-level message kinds and their conversion to LLM messages.

The history holds more than the three roles a provider understands: shell
commands the user ran directly, extension-injected messages, and summaries
standing in for discarded or abandoned history. ``convert_to_llm`` maps
all of them onto plain user/assistant/tool-result messages.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from condense.ai.types import (
    AssistantMessage,
    ImageContent,
    Message,
    TextContent,
    ToolResultMessage,
    UserMessage,
)

COMPACTION_SUMMARY_PREFIX = (
    "The conversation history before this point was compacted into the following summary:\n\n<summary>\n"
)
COMPACTION_SUMMARY_SUFFIX = "\n</summary>"

BRANCH_SUMMARY_PREFIX = (
    "The following is a summary of a branch that this conversation came back from:\n\n<summary>\n"
)
BRANCH_SUMMARY_SUFFIX = "\n</summary>"


class BashExecutionMessage(BaseModel):
    """A shell command the user ran outside the model's tool loop."""

    model_config = ConfigDict(populate_by_name=True)

    role: Literal["bash_execution"] = "bash_execution"
    command: str
    output: str = ""
    exit_code: int | None = Field(default=None, alias="exitCode")
    cancelled: bool = False
    truncated: bool = False
    exclude_from_context: bool = Field(default=False, alias="excludeFromContext")
    timestamp: int = 0


class CustomMessage(BaseModel):
    """Extension-injected message that takes part in the model context."""

    model_config = ConfigDict(populate_by_name=True)

    role: Literal["custom"] = "custom"
    custom_type: str = Field(default="", alias="customType")
    content: str | list[TextContent | ImageContent]
    display: bool = True
    details: Any = None
    timestamp: int = 0


class BranchSummaryMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Literal["branch_summary"] = "branch_summary"
    summary: str
    from_id: str = Field(default="", alias="fromId")
    timestamp: int = 0


class CompactionSummaryMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Literal["compaction_summary"] = "compaction_summary"
    summary: str
    tokens_before: int = Field(default=0, alias="tokensBefore")
    timestamp: int = 0


AgentMessage = (
    UserMessage
    | AssistantMessage
    | ToolResultMessage
    | BashExecutionMessage
    | CustomMessage
    | BranchSummaryMessage
    | CompactionSummaryMessage
)

# Roles that open a turn: anything the user (or something acting for them) said.
USER_EQUIVALENT_ROLES = frozenset({"user", "bash_execution", "custom", "branch_summary", "compaction_summary"})


def bash_execution_to_text(message: BashExecutionMessage) -> str:
    text = f"Ran `{message.command}`\n"
    if message.output:
        text += f"```\n{message.output}\n```"
    else:
        text += "(no output)"
    if message.cancelled:
        text += "\n\n(command cancelled)"
    elif message.exit_code not in (None, 0):
        text += f"\n\nCommand exited with code {message.exit_code}"
    if message.truncated:
        text += "\n\n(output truncated)"
    return text


def convert_to_llm(messages: list[AgentMessage]) -> list[Message]:
    """Convert agent messages to the roles a provider accepts.

    Bash executions marked ``exclude_from_context`` are dropped.
    """
    result: list[Message] = []
    for msg in messages:
        if isinstance(msg, UserMessage | AssistantMessage | ToolResultMessage):
            result.append(msg)
        elif isinstance(msg, BashExecutionMessage):
            if msg.exclude_from_context:
                continue
            result.append(UserMessage(content=[TextContent(text=bash_execution_to_text(msg))], timestamp=msg.timestamp))
        elif isinstance(msg, CustomMessage):
            content = [TextContent(text=msg.content)] if isinstance(msg.content, str) else list(msg.content)
            result.append(UserMessage(content=content, timestamp=msg.timestamp))
        elif isinstance(msg, BranchSummaryMessage):
            text = BRANCH_SUMMARY_PREFIX + msg.summary + BRANCH_SUMMARY_SUFFIX
            result.append(UserMessage(content=[TextContent(text=text)], timestamp=msg.timestamp))
        elif isinstance(msg, CompactionSummaryMessage):
            text = COMPACTION_SUMMARY_PREFIX + msg.summary + COMPACTION_SUMMARY_SUFFIX
            result.append(UserMessage(content=[TextContent(text=text)], timestamp=msg.timestamp))
    return result
