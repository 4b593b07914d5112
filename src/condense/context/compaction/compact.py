"""Compaction orchestration: analyze the active range, summarize, report.

``prepare_compaction`` is the dry run: it decides the cut and gathers the
messages without any model call, so a hook can inspect or replace the
result. ``compact`` runs the same analysis and then summarizes. Neither
touches the history; the caller appends the marker.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from condense.context.compaction.cut_point import CutPointResult, find_cut_point, find_turn_end_index
from condense.context.compaction.errors import AlreadyCompactedError, NothingToCompactError
from condense.context.compaction.file_ops import (
    FileOperations,
    compute_file_lists,
    create_file_ops,
    extract_file_operations,
    format_file_operations,
)
from condense.context.compaction.prompts import NO_PRIOR_HISTORY, SPLIT_TURN_HEADING
from condense.context.compaction.summarize import generate_summary, generate_turn_prefix_summary
from condense.context.compaction.tokens import calculate_context_tokens, get_last_assistant_usage
from condense.context.sessions import CompactionEntry, get_message_from_entry

if TYPE_CHECKING:
    from condense.ai.types import Model
    from condense.context.messages import AgentMessage
    from condense.context.sessions import SessionEntry

logger = logging.getLogger(__name__)


# --- Settings ---


@dataclass
class CompactionSettings:
    """When to compact and how much recent history to keep verbatim."""

    enabled: bool = True
    reserve_tokens: int = 16384
    keep_recent_tokens: int = 20000


DEFAULT_COMPACTION_SETTINGS = CompactionSettings()


# --- Result types ---


@dataclass
class CompactionDetails:
    """File lists stored in the marker's ``details``."""

    read_files: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"readFiles": list(self.read_files), "modifiedFiles": list(self.modified_files)}


@dataclass
class CompactionResult:
    """What the caller persists as a new compaction marker."""

    summary: str
    first_kept_entry_id: str
    tokens_before: int
    details: Any = None


@dataclass
class CompactionPreparation:
    """Everything ``compact`` needs, computed without calling the model."""

    cut_point: CutPointResult
    first_kept_entry_id: str
    messages_to_summarize: list[AgentMessage]
    turn_prefix_messages: list[AgentMessage]
    messages_to_keep: list[AgentMessage]
    tokens_before: int
    boundary_start: int
    settings: CompactionSettings
    previous_summary: str | None = None
    file_ops: FileOperations = field(default_factory=create_file_ops)


# --- Threshold ---


def should_compact(context_tokens: int, context_window: int, settings: CompactionSettings) -> bool:
    """True when the context leaves less than ``reserve_tokens`` of the window free."""
    if not settings.enabled:
        return False
    return context_tokens > context_window - settings.reserve_tokens


# --- Analysis ---


def _find_previous_compaction(entries: list[SessionEntry]) -> int:
    for i in range(len(entries) - 1, -1, -1):
        if isinstance(entries[i], CompactionEntry):
            return i
    return -1


def _collect_messages(entries: list[SessionEntry], start: int, end: int) -> list[AgentMessage]:
    messages: list[AgentMessage] = []
    for entry in entries[start:end]:
        message = get_message_from_entry(entry)
        if message is not None:
            messages.append(message)
    return messages


def _analyze(entries: list[SessionEntry], settings: CompactionSettings) -> CompactionPreparation:
    """Run the cut analysis, raising on the precondition failures."""
    if entries and isinstance(entries[-1], CompactionEntry):
        raise AlreadyCompactedError()

    prev_compaction_index = _find_previous_compaction(entries)
    boundary_start = prev_compaction_index + 1
    boundary_end = len(entries)
    if boundary_start >= boundary_end:
        raise NothingToCompactError()

    last_usage = get_last_assistant_usage(entries)
    tokens_before = calculate_context_tokens(last_usage) if last_usage else 0

    cut = find_cut_point(entries, boundary_start, boundary_end, settings.keep_recent_tokens)
    history_end = cut.turn_start_index if cut.is_split_turn else cut.first_kept_entry_index

    messages_to_summarize = _collect_messages(entries, boundary_start, history_end)
    turn_prefix_messages: list[AgentMessage] = []
    if cut.is_split_turn:
        turn_prefix_messages = _collect_messages(entries, cut.turn_start_index, cut.first_kept_entry_index)

    if not messages_to_summarize and not turn_prefix_messages:
        raise NothingToCompactError()

    # File lists cover the discarded history and the whole of a split turn.
    tracked = list(messages_to_summarize)
    if cut.is_split_turn:
        turn_end = find_turn_end_index(entries, cut.turn_start_index, boundary_end)
        tracked.extend(_collect_messages(entries, cut.turn_start_index, turn_end))
    file_ops = extract_file_operations(tracked, entries, prev_compaction_index)

    previous_summary: str | None = None
    if prev_compaction_index >= 0:
        previous = entries[prev_compaction_index]
        assert isinstance(previous, CompactionEntry)
        previous_summary = previous.summary

    return CompactionPreparation(
        cut_point=cut,
        first_kept_entry_id=entries[cut.first_kept_entry_index].id,
        messages_to_summarize=messages_to_summarize,
        turn_prefix_messages=turn_prefix_messages,
        messages_to_keep=_collect_messages(entries, cut.first_kept_entry_index, boundary_end),
        tokens_before=tokens_before,
        boundary_start=boundary_start,
        settings=settings,
        previous_summary=previous_summary,
        file_ops=file_ops,
    )


def prepare_compaction(
    entries: list[SessionEntry],
    settings: CompactionSettings | None = None,
) -> CompactionPreparation | None:
    """Dry run of ``compact``. Returns None when there is nothing to do."""
    try:
        return _analyze(entries, settings or DEFAULT_COMPACTION_SETTINGS)
    except (AlreadyCompactedError, NothingToCompactError) as e:
        logger.debug("No compaction prepared: %s", e)
        return None


# --- Execution ---


async def _summarize_split_turn(
    preparation: CompactionPreparation,
    model: Model,
    *,
    api_key: str | None,
    abort_event: asyncio.Event | None,
    custom_instructions: str | None,
) -> str:
    reserve_tokens = preparation.settings.reserve_tokens

    async def _history() -> str:
        if not preparation.messages_to_summarize:
            return preparation.previous_summary or NO_PRIOR_HISTORY
        return await generate_summary(
            preparation.messages_to_summarize,
            model,
            reserve_tokens,
            api_key=api_key,
            abort_event=abort_event,
            custom_instructions=custom_instructions,
            previous_summary=preparation.previous_summary,
        )

    history_task = asyncio.ensure_future(_history())
    prefix_task = asyncio.ensure_future(
        generate_turn_prefix_summary(
            preparation.turn_prefix_messages,
            model,
            reserve_tokens,
            api_key=api_key,
            abort_event=abort_event,
        )
    )
    try:
        history, prefix = await asyncio.gather(history_task, prefix_task)
    except BaseException:
        history_task.cancel()
        prefix_task.cancel()
        raise

    return f"{history}\n\n---\n\n{SPLIT_TURN_HEADING}\n\n{prefix}"


async def compact_prepared(
    preparation: CompactionPreparation,
    model: Model,
    *,
    api_key: str | None = None,
    abort_event: asyncio.Event | None = None,
    custom_instructions: str | None = None,
) -> CompactionResult:
    """Generate the summary for an already analyzed compaction."""
    if preparation.turn_prefix_messages:
        summary = await _summarize_split_turn(
            preparation,
            model,
            api_key=api_key,
            abort_event=abort_event,
            custom_instructions=custom_instructions,
        )
    else:
        summary = await generate_summary(
            preparation.messages_to_summarize,
            model,
            preparation.settings.reserve_tokens,
            api_key=api_key,
            abort_event=abort_event,
            custom_instructions=custom_instructions,
            previous_summary=preparation.previous_summary,
        )

    read_files, modified_files = compute_file_lists(preparation.file_ops)
    file_ops_text = format_file_operations(read_files, modified_files)
    if file_ops_text:
        summary += "\n\n" + file_ops_text

    logger.info(
        "Compacted %d messages (%d turn prefix); keeping from entry %s",
        len(preparation.messages_to_summarize),
        len(preparation.turn_prefix_messages),
        preparation.first_kept_entry_id,
    )
    return CompactionResult(
        summary=summary,
        first_kept_entry_id=preparation.first_kept_entry_id,
        tokens_before=preparation.tokens_before,
        details=CompactionDetails(read_files=read_files, modified_files=modified_files),
    )


async def compact(
    entries: list[SessionEntry],
    model: Model,
    settings: CompactionSettings | None = None,
    *,
    api_key: str | None = None,
    abort_event: asyncio.Event | None = None,
    custom_instructions: str | None = None,
) -> CompactionResult:
    """Compact the active range of ``entries``.

    Raises ``AlreadyCompactedError`` or ``NothingToCompactError`` before any
    model call when there is nothing to do.
    """
    preparation = _analyze(entries, settings or DEFAULT_COMPACTION_SETTINGS)
    return await compact_prepared(
        preparation,
        model,
        api_key=api_key,
        abort_event=abort_event,
        custom_instructions=custom_instructions,
    )
