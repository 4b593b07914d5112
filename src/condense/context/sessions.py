"""Append-only session history: entry types and the in-memory store.

Every entry carries a short stable id and a link to the entry appended
before it. Entries never change once appended; compaction only appends a
``CompactionEntry`` marker, and ``build_session_context`` rebuilds the
active context from the most recent marker onward.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from condense.ai.types import ImageContent, TextContent
from condense.context.messages import (
    AgentMessage,
    BranchSummaryMessage,
    CompactionSummaryMessage,
    CustomMessage,
)

# --- Entry types ---


class SessionEntryBase(BaseModel):
    """Common fields for all session entries."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    parent_id: str | None = Field(default=None, alias="parentId")
    timestamp: str = ""


class SessionMessageEntry(SessionEntryBase):
    type: Literal["message"] = "message"
    message: AgentMessage


class ThinkingLevelChangeEntry(SessionEntryBase):
    type: Literal["thinking_level_change"] = "thinking_level_change"
    thinking_level: str = Field(alias="thinkingLevel")


class ModelChangeEntry(SessionEntryBase):
    type: Literal["model_change"] = "model_change"
    model_id: str = Field(alias="modelId")
    provider: str


class CompactionEntry(SessionEntryBase):
    """Marker recording a completed compaction.

    ``details`` is caller-defined; markers written by this package hold
    ``{"readFiles": [...], "modifiedFiles": [...]}``.
    """

    type: Literal["compaction"] = "compaction"
    summary: str
    first_kept_entry_id: str = Field(alias="firstKeptEntryId")
    tokens_before: int = Field(default=0, alias="tokensBefore")
    details: Any = None
    from_hook: bool = Field(default=False, alias="fromHook")


class BranchSummaryEntry(SessionEntryBase):
    """Summary of an abandoned branch, placed where the conversation resumed."""

    type: Literal["branch_summary"] = "branch_summary"
    summary: str
    from_id: str = Field(default="", alias="fromId")
    details: Any = None
    from_hook: bool = Field(default=False, alias="fromHook")


class CustomEntry(SessionEntryBase):
    """Extension-specific data. Not part of the model context."""

    type: Literal["custom"] = "custom"
    custom_type: str = Field(default="", alias="customType")
    data: Any = None


class CustomMessageEntry(SessionEntryBase):
    """Extension message that takes part in the model context."""

    type: Literal["custom_message"] = "custom_message"
    custom_type: str = Field(default="", alias="customType")
    content: str | list[TextContent | ImageContent] = Field(default_factory=list)
    display: bool = True
    details: Any = None


class LabelEntry(SessionEntryBase):
    type: Literal["label"] = "label"
    label: str
    target_id: str = Field(alias="targetId")


SessionEntry = (
    SessionMessageEntry
    | ThinkingLevelChangeEntry
    | ModelChangeEntry
    | CompactionEntry
    | BranchSummaryEntry
    | CustomEntry
    | CustomMessageEntry
    | LabelEntry
)


@dataclass
class SessionContext:
    """Active context resolved from the history."""

    messages: list[AgentMessage] = field(default_factory=list)
    thinking_level: str | None = None
    model_id: str | None = None
    provider: str | None = None


# --- Helpers ---


def _generate_id(existing: set[str]) -> str:
    """Generate a short collision-checked ID."""
    for _ in range(100):
        candidate = uuid4().hex[:8]
        if candidate not in existing:
            return candidate
    return uuid4().hex


def _timestamp_now() -> str:
    return datetime.now(UTC).isoformat()


def _to_ms(timestamp: str) -> int:
    if not timestamp:
        return int(time.time() * 1000)
    return int(datetime.fromisoformat(timestamp).timestamp() * 1000)


def get_message_from_entry(entry: SessionEntry) -> AgentMessage | None:
    """Return the message an entry contributes to the context, if any.

    Compaction markers are not handled here: where their summary goes depends
    on the caller (context rebuild vs. summarization input).
    """
    if isinstance(entry, SessionMessageEntry):
        return entry.message
    if isinstance(entry, CustomMessageEntry):
        return CustomMessage(
            custom_type=entry.custom_type,
            content=entry.content,
            display=entry.display,
            details=entry.details,
            timestamp=_to_ms(entry.timestamp),
        )
    if isinstance(entry, BranchSummaryEntry):
        return BranchSummaryMessage(summary=entry.summary, from_id=entry.from_id, timestamp=_to_ms(entry.timestamp))
    return None


# --- SessionManager ---


class SessionManager:
    """In-memory append-only history store.

    Encoding entries to disk is left to the caller; ``entries`` returns the
    pydantic models, which serialize with ``model_dump(by_alias=True)``.
    """

    def __init__(self, *, session_id: str | None = None, cwd: str = "") -> None:
        self._session_id = session_id or uuid4().hex
        self._cwd = cwd
        self._entries: list[SessionEntry] = []
        self._by_id: dict[str, SessionEntry] = {}
        self._leaf_id: str | None = None

    @classmethod
    def in_memory(cls, cwd: str = "") -> SessionManager:
        return cls(cwd=cwd)

    @classmethod
    def from_entries(cls, entries: list[SessionEntry], cwd: str = "") -> SessionManager:
        """Rebuild a store from previously persisted entries."""
        manager = cls(cwd=cwd)
        for entry in entries:
            manager._entries.append(entry)
            manager._by_id[entry.id] = entry
        manager._leaf_id = entries[-1].id if entries else None
        return manager

    # --- Properties ---

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def cwd(self) -> str:
        return self._cwd

    @property
    def leaf_id(self) -> str | None:
        return self._leaf_id

    @property
    def entries(self) -> list[SessionEntry]:
        return list(self._entries)

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    # --- Append ---

    def _append(self, entry_cls: type[SessionEntryBase], **fields: Any) -> str:
        entry_id = _generate_id(set(self._by_id))
        entry = entry_cls(id=entry_id, parent_id=self._leaf_id, timestamp=_timestamp_now(), **fields)
        self._entries.append(entry)  # type: ignore[arg-type]
        self._by_id[entry_id] = entry  # type: ignore[assignment]
        self._leaf_id = entry_id
        return entry_id

    def append_message(self, message: AgentMessage) -> str:
        return self._append(SessionMessageEntry, message=message)

    def append_thinking_level_change(self, thinking_level: str) -> str:
        return self._append(ThinkingLevelChangeEntry, thinking_level=thinking_level)

    def append_model_change(self, model_id: str, provider: str) -> str:
        return self._append(ModelChangeEntry, model_id=model_id, provider=provider)

    def append_compaction(
        self,
        summary: str,
        *,
        first_kept_entry_id: str,
        tokens_before: int = 0,
        details: Any = None,
        from_hook: bool = False,
    ) -> str:
        """Append a compaction marker."""
        return self._append(
            CompactionEntry,
            summary=summary,
            first_kept_entry_id=first_kept_entry_id,
            tokens_before=tokens_before,
            details=details,
            from_hook=from_hook,
        )

    def append_branch_summary(
        self,
        summary: str,
        from_id: str = "",
        *,
        details: Any = None,
        from_hook: bool = False,
    ) -> str:
        return self._append(BranchSummaryEntry, summary=summary, from_id=from_id, details=details, from_hook=from_hook)

    def append_custom_entry(self, custom_type: str, data: Any = None) -> str:
        return self._append(CustomEntry, custom_type=custom_type, data=data)

    def append_custom_message(
        self,
        custom_type: str,
        content: str | list[TextContent | ImageContent],
        *,
        display: bool = True,
        details: Any = None,
    ) -> str:
        return self._append(CustomMessageEntry, custom_type=custom_type, content=content, display=display, details=details)

    def append_label(self, label: str, target_id: str) -> str:
        return self._append(LabelEntry, label=label, target_id=target_id)

    # --- Lookup ---

    def get_entry(self, entry_id: str) -> SessionEntry | None:
        return self._by_id.get(entry_id)

    def get_last_entry(self) -> SessionEntry | None:
        return self._entries[-1] if self._entries else None

    def get_compactions(self) -> list[CompactionEntry]:
        """All compaction markers, newest first."""
        return [e for e in reversed(self._entries) if isinstance(e, CompactionEntry)]

    # --- Context building ---

    def build_session_context(self) -> SessionContext:
        """Resolve the active context: latest marker summary, then kept and newer entries."""
        entries = self._entries
        thinking_level: str | None = None
        model_id: str | None = None
        provider: str | None = None

        for entry in entries:
            if isinstance(entry, ThinkingLevelChangeEntry):
                thinking_level = entry.thinking_level
            elif isinstance(entry, ModelChangeEntry):
                model_id = entry.model_id
                provider = entry.provider

        compaction_index = -1
        for i in range(len(entries) - 1, -1, -1):
            if isinstance(entries[i], CompactionEntry):
                compaction_index = i
                break

        messages: list[AgentMessage] = []
        if compaction_index < 0:
            selected = entries
        else:
            marker = entries[compaction_index]
            assert isinstance(marker, CompactionEntry)
            messages.append(
                CompactionSummaryMessage(
                    summary=marker.summary,
                    tokens_before=marker.tokens_before,
                    timestamp=_to_ms(marker.timestamp),
                )
            )
            kept_start = compaction_index
            for i in range(compaction_index):
                if entries[i].id == marker.first_kept_entry_id:
                    kept_start = i
                    break
            selected = entries[kept_start:compaction_index] + entries[compaction_index + 1 :]

        for entry in selected:
            message = get_message_from_entry(entry)
            if message is not None:
                messages.append(message)

        return SessionContext(
            messages=messages,
            thinking_level=thinking_level,
            model_id=model_id,
            provider=provider,
        )
