"""Exceptions raised by compaction."""

from __future__ import annotations


class CompactionError(Exception):
    """Base class for compaction failures."""


class AlreadyCompactedError(CompactionError):
    """The most recent entry is already a compaction marker."""

    def __init__(self) -> None:
        super().__init__("Already compacted")


class NothingToCompactError(CompactionError):
    """The active range holds nothing that would be summarized."""

    def __init__(self) -> None:
        super().__init__("Nothing to compact")


class CompactionInProgressError(CompactionError):
    def __init__(self) -> None:
        super().__init__("A compaction is already running for this session")


class CompactionAbortedError(CompactionError):
    def __init__(self) -> None:
        super().__init__("Compaction was aborted")


class SummarizationError(CompactionError):
    """The model failed to produce a summary."""


class ContextOverflowError(CompactionError):
    """Compaction after a context overflow failed; the turn cannot be resubmitted."""
