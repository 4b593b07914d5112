"""Tracking which files the agent read and modified.

Summaries carry these lists so the fact that a file was touched survives
any number of compactions, long after the tool calls themselves are gone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from condense.ai.types import AssistantMessage, ToolCall
from condense.context.sessions import CompactionEntry

if TYPE_CHECKING:
    from condense.context.messages import AgentMessage
    from condense.context.sessions import SessionEntry

READ_TOOLS = frozenset({"read"})
WRITE_TOOLS = frozenset({"write"})
EDIT_TOOLS = frozenset({"edit"})


@dataclass
class FileOperations:
    read: set[str] = field(default_factory=set)
    written: set[str] = field(default_factory=set)
    edited: set[str] = field(default_factory=set)


def create_file_ops() -> FileOperations:
    return FileOperations()


def _tool_call_path(call: ToolCall) -> str | None:
    args = call.arguments
    path = args.get("path") or args.get("file_path")
    return path if isinstance(path, str) and path else None


def extract_file_ops_from_message(message: AgentMessage, file_ops: FileOperations) -> None:
    """Record the paths touched by an assistant message's tool calls."""
    if not isinstance(message, AssistantMessage):
        return

    for block in message.content:
        if not isinstance(block, ToolCall):
            continue
        path = _tool_call_path(block)
        if path is None:
            continue

        if block.name in READ_TOOLS:
            file_ops.read.add(path)
        elif block.name in WRITE_TOOLS:
            file_ops.written.add(path)
        elif block.name in EDIT_TOOLS:
            file_ops.edited.add(path)


def _carry_forward(details: Any, file_ops: FileOperations) -> None:
    if not isinstance(details, dict):
        return
    read_files = details.get("readFiles", details.get("read_files"))
    modified_files = details.get("modifiedFiles", details.get("modified_files"))
    if isinstance(read_files, list):
        file_ops.read.update(f for f in read_files if isinstance(f, str))
    if isinstance(modified_files, list):
        file_ops.edited.update(f for f in modified_files if isinstance(f, str))


def extract_file_operations(
    messages: list[AgentMessage],
    entries: list[SessionEntry],
    prev_compaction_index: int,
) -> FileOperations:
    """Collect file operations from ``messages`` plus the previous marker.

    The previous marker's lists are carried forward only when this package
    wrote them; markers supplied by a hook have caller-defined details.
    """
    file_ops = create_file_ops()

    if prev_compaction_index >= 0:
        previous = entries[prev_compaction_index]
        if isinstance(previous, CompactionEntry) and not previous.from_hook:
            _carry_forward(previous.details, file_ops)

    for message in messages:
        extract_file_ops_from_message(message, file_ops)

    return file_ops


def compute_file_lists(file_ops: FileOperations) -> tuple[list[str], list[str]]:
    """Return ``(read_only, modified)``, both sorted.

    A file that was both read and modified is listed as modified only.
    """
    modified = file_ops.written | file_ops.edited
    read_only = file_ops.read - modified
    return sorted(read_only), sorted(modified)


def format_file_operations(read_files: list[str], modified_files: list[str]) -> str:
    """Render the file lists as tagged blocks for the end of a summary."""
    sections: list[str] = []
    if read_files:
        sections.append("<read-files>\n" + "\n".join(read_files) + "\n</read-files>")
    if modified_files:
        sections.append("<modified-files>\n" + "\n".join(modified_files) + "\n</modified-files>")
    return "\n\n".join(sections)
