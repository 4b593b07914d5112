"""Agent session event types.

Events emitted by AgentSession to subscribers, plus the payloads passed to
compaction hooks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from condense.context.compaction.compact import CompactionPreparation, CompactionResult
    from condense.context.sessions import CompactionEntry

CompactionReason = Literal["manual", "threshold", "overflow"]


@dataclass
class AgentSessionEvent:
    """Base class for agent session events."""

    type: str


@dataclass
class AutoCompactionStartEvent(AgentSessionEvent):
    """Emitted when auto-compaction begins."""

    reason: Literal["threshold", "overflow"] = "threshold"
    type: str = "auto_compaction_start"


@dataclass
class AutoCompactionEndEvent(AgentSessionEvent):
    """Emitted when auto-compaction finishes, successfully or not."""

    result: CompactionResult | None = None
    aborted: bool = False
    will_retry: bool = False
    error_message: str | None = None
    type: str = "auto_compaction_end"


@dataclass
class AutoRetryStartEvent(AgentSessionEvent):
    attempt: int = 0
    max_attempts: int = 0
    delay_ms: int = 0
    error_message: str = ""
    type: str = "auto_retry_start"


@dataclass
class AutoRetryEndEvent(AgentSessionEvent):
    """Emitted once when a retry sequence ends."""

    success: bool = False
    attempt: int = 0
    final_error: str | None = None
    type: str = "auto_retry_end"


# --- Hooks ---


@dataclass
class BeforeCompactEvent:
    """Passed to ``on_before_compact`` handlers before the model is called."""

    preparation: CompactionPreparation
    previous_compactions: list[CompactionEntry] = field(default_factory=list)
    custom_instructions: str | None = None
    reason: CompactionReason = "manual"


@dataclass
class CompactionHookResult:
    """Returned by a before-compact handler.

    ``cancel`` stops the compaction. A ``compaction`` result is persisted
    as-is instead of asking the model for a summary.
    """

    cancel: bool = False
    compaction: CompactionResult | None = None


@dataclass
class CompactEvent:
    """Passed to ``on_compact`` handlers after the marker is persisted."""

    compaction_entry: CompactionEntry
    from_hook: bool = False
