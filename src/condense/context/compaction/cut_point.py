"""Choosing where retained history begins.

Retention works at turn granularity: a turn starts at a user-equivalent
entry and runs through the assistant and tool-result entries that follow
it. A cut never lands on a tool result, since that would separate the
result from the call that produced it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from condense.ai.types import ToolResultMessage, UserMessage
from condense.context.compaction.tokens import estimate_tokens
from condense.context.messages import USER_EQUIVALENT_ROLES
from condense.context.sessions import (
    BranchSummaryEntry,
    CompactionEntry,
    CustomMessageEntry,
    SessionMessageEntry,
)

if TYPE_CHECKING:
    from condense.context.sessions import SessionEntry

logger = logging.getLogger(__name__)


@dataclass
class CutPointResult:
    """Where compaction cuts the active range.

    ``turn_start_index`` is the entry opening the turn being split, or -1
    when the cut falls on a turn boundary.
    """

    first_kept_entry_index: int
    turn_start_index: int = -1
    is_split_turn: bool = False


def _is_valid_cut_point(entry: SessionEntry) -> bool:
    if isinstance(entry, SessionMessageEntry):
        return not isinstance(entry.message, ToolResultMessage)
    return isinstance(entry, BranchSummaryEntry | CustomMessageEntry)


def _is_turn_start(entry: SessionEntry) -> bool:
    if isinstance(entry, BranchSummaryEntry | CustomMessageEntry):
        return True
    return isinstance(entry, SessionMessageEntry) and entry.message.role in USER_EQUIVALENT_ROLES


def find_valid_cut_points(entries: list[SessionEntry], start: int, end: int) -> list[int]:
    """Indices in ``[start, end)`` where retained history may begin."""
    return [i for i in range(start, min(end, len(entries))) if _is_valid_cut_point(entries[i])]


def find_turn_start_index(entries: list[SessionEntry], index: int, start: int) -> int:
    """Index of the entry that opened the turn containing ``index``, or -1."""
    for i in range(index, start - 1, -1):
        if _is_turn_start(entries[i]):
            return i
    return -1


def find_turn_end_index(entries: list[SessionEntry], turn_start: int, end: int) -> int:
    """Exclusive end of the turn opened at ``turn_start``."""
    for i in range(turn_start + 1, end):
        if _is_turn_start(entries[i]):
            return i
    return end


def find_cut_point(
    entries: list[SessionEntry],
    start: int,
    end: int,
    keep_recent_tokens: int,
) -> CutPointResult:
    """Find the first entry to keep so roughly ``keep_recent_tokens`` stay verbatim.

    Walks backward from ``end`` summing message estimates. Once the budget
    is reached, the cut moves forward to the nearest valid cut point, so the
    kept tail may be slightly under budget but never starts mid-call. If the
    budget is never reached, everything from the first valid cut point is
    kept.
    """
    cut_points = find_valid_cut_points(entries, start, end)
    if not cut_points:
        return CutPointResult(first_kept_entry_index=start)

    accumulated = 0
    cut_index = cut_points[0]

    for i in range(end - 1, start - 1, -1):
        entry = entries[i]
        if not isinstance(entry, SessionMessageEntry):
            continue
        accumulated += estimate_tokens(entry.message)
        if accumulated >= keep_recent_tokens:
            for point in cut_points:
                if point >= i:
                    cut_index = point
                    break
            break

    # Classify on the chosen point, before pulling in the entries that precede it.
    boundary_entry = entries[cut_index]
    boundary_index = cut_index

    # Settings changes and other non-message entries stay with the turn they precede.
    while cut_index > start:
        previous = entries[cut_index - 1]
        if isinstance(previous, CompactionEntry | SessionMessageEntry):
            break
        cut_index -= 1

    turn_start = -1
    is_user_message = isinstance(boundary_entry, SessionMessageEntry) and isinstance(boundary_entry.message, UserMessage)
    if not is_user_message:
        found = find_turn_start_index(entries, boundary_index, start)
        # A turn start inside the kept range means no turn is split.
        if 0 <= found < cut_index:
            turn_start = found

    result = CutPointResult(
        first_kept_entry_index=cut_index,
        turn_start_index=turn_start,
        is_split_turn=turn_start != -1,
    )
    logger.debug(
        "Cut point in [%d, %d): keep from %d (split=%s, kept ~%d tokens)",
        start,
        end,
        cut_index,
        result.is_split_turn,
        accumulated,
    )
    return result
