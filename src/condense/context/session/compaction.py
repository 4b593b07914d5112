"""Agent session compaction and auto-retry helper.

Decides when a finished turn calls for compaction (threshold or overflow),
runs it on the session's history, and retries transient provider errors
with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any

from condense.ai.overflow import is_context_overflow
from condense.ai.types import AssistantMessage
from condense.context.compaction.compact import (
    CompactionDetails,
    CompactionResult,
    compact_prepared,
    prepare_compaction,
    should_compact,
)
from condense.context.compaction.errors import (
    AlreadyCompactedError,
    CompactionAbortedError,
    CompactionError,
    CompactionInProgressError,
    ContextOverflowError,
    NothingToCompactError,
)
from condense.context.compaction.tokens import calculate_context_tokens
from condense.context.session.events import (
    AutoCompactionEndEvent,
    AutoCompactionStartEvent,
    AutoRetryEndEvent,
    AutoRetryStartEvent,
    BeforeCompactEvent,
    CompactEvent,
    CompactionReason,
)
from condense.context.sessions import CompactionEntry

if TYPE_CHECKING:
    from condense.context.messages import AgentMessage

logger = logging.getLogger(__name__)

# Transient provider failures worth resubmitting
_RETRYABLE_ERROR_RE = re.compile(
    r"overloaded|rate.?limit|too.?many.?requests|\b(?:408|429|5\d{2})\b"
    r"|service.?unavailable|server.?error|internal.?error"
    r"|connection.?(?:error|reset|refused)|ECONNRESET|ETIMEDOUT|fetch.?failed",
    re.IGNORECASE,
)

RETRY_CANCELLED = "Retry cancelled"


def is_retryable_error(message: AssistantMessage, context_window: int = 0) -> bool:
    """True for error turns caused by a transient condition.

    Context overflow never counts, even when the message also matches a
    transient pattern: compaction handles it.
    """
    if message.stop_reason != "error" or not message.error_message:
        return False
    if is_context_overflow(message, context_window):
        return False
    return bool(_RETRYABLE_ERROR_RE.search(message.error_message))


def compute_retry_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Exponential backoff: ``base * 2^(attempt - 1)``, capped at ``max_delay_ms``."""
    return min(base_delay_ms * 2 ** (attempt - 1), max_delay_ms)


class AgentSessionCompaction:
    """Compaction and retry management for AgentSession.

    Uses composition: takes a reference to the parent session.
    """

    def __init__(self, session: Any) -> None:
        self._session = session

        # Abort signals
        self._compaction_abort: asyncio.Event | None = None
        self._auto_compaction_abort: asyncio.Event | None = None
        self._retry_abort: asyncio.Event | None = None

        # Retry state
        self._retry_attempt = 0
        self._retry_future: asyncio.Future[None] | None = None

        self._is_compacting = False

    @property
    def is_compacting(self) -> bool:
        return self._is_compacting

    @property
    def retry_attempt(self) -> int:
        return self._retry_attempt

    # --- Compaction ---

    async def compact_manual(self, custom_instructions: str | None = None) -> CompactionResult:
        """Run a user-requested compaction.

        Raises ``CompactionInProgressError`` if one is already running, and
        the precondition errors when there is nothing to do.
        """
        if self._is_compacting:
            raise CompactionInProgressError()

        session = self._session
        self.abort_retry()
        session._disconnect_from_agent()
        session.agent.abort()

        self._is_compacting = True
        self._compaction_abort = asyncio.Event()
        try:
            return await self._execute("manual", custom_instructions, self._compaction_abort)
        finally:
            self._is_compacting = False
            self._compaction_abort = None
            session._reconnect_to_agent()

    def abort_compaction(self) -> None:
        """Cancel an in-progress compaction. Nothing is persisted."""
        if self._compaction_abort:
            self._compaction_abort.set()
        if self._auto_compaction_abort:
            self._auto_compaction_abort.set()

    async def check_compaction(self, message: AssistantMessage, skip_aborted: bool = True) -> None:
        """Compact after a finished turn if needed.

        Overflow: the failed message is dropped from the active list, the
        history compacted and the turn resubmitted. Threshold: compaction
        runs and the user continues on their next input. Aborted turns are
        ignored unless ``skip_aborted`` is False.
        """
        session = self._session
        settings = session.settings_manager.get_compaction_settings()
        if not settings.enabled:
            return
        if skip_aborted and message.stop_reason == "aborted":
            return

        model = session.model
        context_window = model.context_window if model else 0

        if is_context_overflow(message, context_window):
            self._remove_failed_message(message)
            await self._run_auto_compaction("overflow", will_retry=True)
            return

        if message.stop_reason == "error" or context_window <= 0:
            return

        context_tokens = calculate_context_tokens(message.usage)
        if should_compact(context_tokens, context_window, settings):
            logger.info("Context at %d of %d tokens; compacting", context_tokens, context_window)
            await self._run_auto_compaction("threshold", will_retry=False)

    async def _run_auto_compaction(self, reason: CompactionReason, will_retry: bool) -> None:
        """Execute auto-compaction with start and end events."""
        session = self._session
        if self._is_compacting:
            logger.debug("Skipping %s compaction: another compaction is running", reason)
            return

        session._emit_session_event(AutoCompactionStartEvent(reason=reason))

        abort_event = asyncio.Event()
        self._auto_compaction_abort = abort_event
        self._is_compacting = True
        session._disconnect_from_agent()
        try:
            result = await self._execute(reason, None, abort_event)
        except Exception as e:
            aborted = isinstance(e, CompactionAbortedError) or abort_event.is_set()
            session._emit_session_event(AutoCompactionEndEvent(aborted=aborted, error_message=str(e)))
            if reason == "overflow" and not aborted:
                raise ContextOverflowError(
                    f"Context overflow: {e}. Your input may be too large for the context window."
                ) from e
            logger.warning("Auto-compaction (%s) did not complete: %s", reason, e)
            return
        finally:
            self._is_compacting = False
            self._auto_compaction_abort = None
            session._reconnect_to_agent()

        session._emit_session_event(AutoCompactionEndEvent(result=result, will_retry=will_retry))

        if will_retry:
            messages = session.agent.state.messages
            if messages and isinstance(messages[-1], AssistantMessage) and messages[-1].stop_reason == "error":
                session.agent.replace_messages(messages[:-1])
            session._schedule(session.agent.continue_())

    async def _execute(
        self,
        reason: CompactionReason,
        custom_instructions: str | None,
        abort_event: asyncio.Event,
    ) -> CompactionResult:
        """Prepare, consult hooks, summarize, persist and rebuild the active list."""
        session = self._session
        model = session.model
        if model is None:
            raise CompactionError("No model configured")

        session_manager = session.session_manager
        entries = session_manager.entries
        preparation = prepare_compaction(entries, session.settings_manager.get_compaction_settings())
        if preparation is None:
            if entries and isinstance(entries[-1], CompactionEntry):
                raise AlreadyCompactedError()
            raise NothingToCompactError()

        hook_result = await session._emit_before_compact(
            BeforeCompactEvent(
                preparation=preparation,
                previous_compactions=session_manager.get_compactions(),
                custom_instructions=custom_instructions,
                reason=reason,
            )
        )
        if hook_result is not None and hook_result.cancel:
            raise CompactionAbortedError()

        from_hook = hook_result is not None and hook_result.compaction is not None
        if from_hook:
            result = hook_result.compaction
        else:
            result = await compact_prepared(
                preparation,
                model,
                api_key=session.api_key,
                abort_event=abort_event,
                custom_instructions=custom_instructions,
            )

        if abort_event.is_set():
            raise CompactionAbortedError()

        details = result.details.to_dict() if isinstance(result.details, CompactionDetails) else result.details
        entry_id = session_manager.append_compaction(
            result.summary,
            first_kept_entry_id=result.first_kept_entry_id,
            tokens_before=result.tokens_before,
            details=details,
            from_hook=from_hook,
        )

        context = session_manager.build_session_context()
        session.agent.replace_messages(context.messages)

        entry = session_manager.get_entry(entry_id)
        assert isinstance(entry, CompactionEntry)
        await session._emit_compact(CompactEvent(compaction_entry=entry, from_hook=from_hook))
        return result

    # --- Retry ---

    def is_retryable_error(self, message: AssistantMessage) -> bool:
        model = self._session.model
        return is_retryable_error(message, model.context_window if model else 0)

    async def handle_retryable_error(self, message: AssistantMessage) -> bool:
        """Wait out a transient error, then resubmit.

        Returns True if a retry was scheduled, False if retries are disabled,
        exhausted, or cancelled.
        """
        session = self._session
        retry_settings = session.settings_manager.get_retry_settings()
        if not retry_settings.enabled:
            self.finish_retry(message)
            return False

        self._retry_attempt += 1
        if self._retry_attempt == 1:
            self._retry_future = asyncio.get_running_loop().create_future()

        if self._retry_attempt > retry_settings.max_retries:
            session._emit_session_event(
                AutoRetryEndEvent(
                    success=False,
                    attempt=retry_settings.max_retries,
                    final_error=message.error_message,
                )
            )
            logger.warning("Giving up after %d retries: %s", retry_settings.max_retries, message.error_message)
            self._reset_retry()
            return False

        delay_ms = compute_retry_delay_ms(
            self._retry_attempt,
            retry_settings.base_delay_ms,
            retry_settings.max_delay_ms,
        )
        session._emit_session_event(
            AutoRetryStartEvent(
                attempt=self._retry_attempt,
                max_attempts=retry_settings.max_retries,
                delay_ms=delay_ms,
                error_message=message.error_message or "",
            )
        )
        logger.info(
            "Retrying in %d ms (attempt %d/%d): %s",
            delay_ms,
            self._retry_attempt,
            retry_settings.max_retries,
            message.error_message,
        )

        self._remove_failed_message(message)

        self._retry_abort = asyncio.Event()
        try:
            await asyncio.wait_for(self._retry_abort.wait(), timeout=delay_ms / 1000.0)
        except TimeoutError:
            pass
        else:
            session._emit_session_event(
                AutoRetryEndEvent(success=False, attempt=self._retry_attempt, final_error=RETRY_CANCELLED)
            )
            self._reset_retry()
            return False
        finally:
            self._retry_abort = None

        session._schedule(session.agent.continue_())
        return True

    def abort_retry(self) -> None:
        """Cancel the pending retry wait, or end the sequence if none is waiting."""
        if self._retry_abort:
            self._retry_abort.set()
        else:
            self._reset_retry()

    async def wait_for_retry(self) -> None:
        """Wait for any active retry sequence to complete."""
        if self._retry_future:
            await self._retry_future

    def finish_retry(self, message: AssistantMessage) -> None:
        """End an active retry sequence on a turn that will not be retried.

        A completed turn ends it successfully. An error or aborted turn ends it
        as a failure carrying that turn's error.
        """
        if self._retry_attempt == 0:
            return
        if message.stop_reason in ("error", "aborted"):
            event = AutoRetryEndEvent(
                success=False,
                attempt=self._retry_attempt,
                final_error=message.error_message,
            )
        else:
            event = AutoRetryEndEvent(success=True, attempt=self._retry_attempt)
        self._session._emit_session_event(event)
        self._reset_retry()

    def _reset_retry(self) -> None:
        self._retry_attempt = 0
        if self._retry_future and not self._retry_future.done():
            self._retry_future.set_result(None)
        self._retry_future = None

    # --- Helpers ---

    def _remove_failed_message(self, message: AgentMessage) -> None:
        """Drop ``message`` from the active list if it is still the last one."""
        agent = self._session.agent
        messages = agent.state.messages
        if messages and messages[-1] == message:
            agent.replace_messages(messages[:-1])
