"""condense.context: conversation-context management for a coding agent."""

from condense.context.messages import (
    AgentMessage,
    BashExecutionMessage,
    BranchSummaryMessage,
    CompactionSummaryMessage,
    CustomMessage,
    convert_to_llm,
)
from condense.context.sessions import (
    CompactionEntry,
    SessionContext,
    SessionEntry,
    SessionManager,
)
from condense.context.settings import RetrySettings, SettingsManager
from condense.context.session import AgentSession, AgentSessionConfig
from condense.context.session.events import (
    AgentSessionEvent,
    AutoCompactionEndEvent,
    AutoCompactionStartEvent,
    AutoRetryEndEvent,
    AutoRetryStartEvent,
    BeforeCompactEvent,
    CompactEvent,
    CompactionHookResult,
)

__all__ = [
    "AgentMessage",
    "AgentSession",
    "AgentSessionConfig",
    "AgentSessionEvent",
    "AutoCompactionEndEvent",
    "AutoCompactionStartEvent",
    "AutoRetryEndEvent",
    "AutoRetryStartEvent",
    "BashExecutionMessage",
    "BeforeCompactEvent",
    "BranchSummaryMessage",
    "CompactEvent",
    "CompactionEntry",
    "CompactionHookResult",
    "CompactionSummaryMessage",
    "CustomMessage",
    "RetrySettings",
    "SessionContext",
    "SessionEntry",
    "SessionManager",
    "SettingsManager",
    "convert_to_llm",
]
