"""Context compaction for managing conversation history size.

Replaces old history with a model-written summary while keeping recent
turns verbatim, and tracks which files were read or modified along the way.
"""

from condense.context.compaction.compact import (
    DEFAULT_COMPACTION_SETTINGS,
    CompactionDetails,
    CompactionPreparation,
    CompactionResult,
    CompactionSettings,
    compact,
    compact_prepared,
    prepare_compaction,
    should_compact,
)
from condense.context.compaction.cut_point import (
    CutPointResult,
    find_cut_point,
    find_turn_end_index,
    find_turn_start_index,
    find_valid_cut_points,
)
from condense.context.compaction.errors import (
    AlreadyCompactedError,
    CompactionAbortedError,
    CompactionError,
    CompactionInProgressError,
    ContextOverflowError,
    NothingToCompactError,
    SummarizationError,
)
from condense.context.compaction.file_ops import (
    FileOperations,
    compute_file_lists,
    create_file_ops,
    extract_file_operations,
    extract_file_ops_from_message,
    format_file_operations,
)
from condense.context.compaction.prompts import SUMMARIZATION_SYSTEM_PROMPT
from condense.context.compaction.summarize import (
    generate_summary,
    generate_turn_prefix_summary,
    serialize_conversation,
)
from condense.context.compaction.tokens import (
    ContextUsageEstimate,
    calculate_context_tokens,
    estimate_context_tokens,
    estimate_entry_tokens,
    estimate_tokens,
    get_last_assistant_usage,
)

__all__ = [
    "DEFAULT_COMPACTION_SETTINGS",
    "SUMMARIZATION_SYSTEM_PROMPT",
    "AlreadyCompactedError",
    "CompactionAbortedError",
    "CompactionDetails",
    "CompactionError",
    "CompactionInProgressError",
    "CompactionPreparation",
    "CompactionResult",
    "CompactionSettings",
    "ContextOverflowError",
    "ContextUsageEstimate",
    "CutPointResult",
    "FileOperations",
    "NothingToCompactError",
    "SummarizationError",
    "calculate_context_tokens",
    "compact",
    "compact_prepared",
    "compute_file_lists",
    "create_file_ops",
    "estimate_context_tokens",
    "estimate_entry_tokens",
    "estimate_tokens",
    "extract_file_operations",
    "extract_file_ops_from_message",
    "find_cut_point",
    "find_turn_end_index",
    "find_turn_start_index",
    "find_valid_cut_points",
    "format_file_operations",
    "generate_summary",
    "generate_turn_prefix_summary",
    "get_last_assistant_usage",
    "prepare_compaction",
    "serialize_conversation",
    "should_compact",
]
