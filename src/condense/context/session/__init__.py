"""AgentSession: ties the agent's active context to its persisted history.

The session is told about every finished turn through ``handle_turn_end``.
It persists the message, retries transient failures, compacts when the
context fills up, and runs compaction hooks.

Handles:
- Turn routing (persist -> retry -> compaction)
- Manual and automatic compaction, with before/after hooks
- Event emission to subscribers
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from condense.ai.types import AssistantMessage
from condense.context.compaction.tokens import ContextUsageEstimate, estimate_context_tokens
from condense.context.session.compaction import AgentSessionCompaction
from condense.context.session.events import (
    AgentSessionEvent,
    BeforeCompactEvent,
    CompactEvent,
    CompactionHookResult,
)

if TYPE_CHECKING:
    from condense.ai.types import Model
    from condense.context.compaction.compact import CompactionResult
    from condense.context.messages import AgentMessage
    from condense.context.sessions import SessionManager
    from condense.context.settings import SettingsManager

logger = logging.getLogger(__name__)

EventListener = Callable[[AgentSessionEvent], None]
BeforeCompactHandler = Callable[
    [BeforeCompactEvent], CompactionHookResult | None | Awaitable[CompactionHookResult | None]
]
CompactHandler = Callable[[CompactEvent], None | Awaitable[None]]


class AgentState(Protocol):
    messages: list[AgentMessage]


class Agent(Protocol):
    """The running agent whose active message list the session manages."""

    @property
    def state(self) -> AgentState: ...

    def replace_messages(self, messages: list[AgentMessage]) -> None: ...

    async def continue_(self) -> None: ...

    def abort(self) -> None: ...


@dataclass
class AgentSessionConfig:
    """Configuration for constructing an AgentSession."""

    agent: Agent
    session_manager: SessionManager
    settings_manager: SettingsManager
    model: Model | None = None
    api_key: str | None = None


class AgentSession:
    """Session orchestrator for context management."""

    def __init__(self, config: AgentSessionConfig) -> None:
        self._agent = config.agent
        self._session_manager = config.session_manager
        self._settings_manager = config.settings_manager
        self._model = config.model
        self._api_key = config.api_key

        # Listeners and hooks
        self._event_listeners: list[EventListener] = []
        self._before_compact_handlers: list[BeforeCompactHandler] = []
        self._compact_handlers: list[CompactHandler] = []

        # Turn ends are ignored while disconnected
        self._connected = True
        self._background_tasks: set[asyncio.Task[Any]] = set()

        self._compaction = AgentSessionCompaction(self)

    # --- Properties ---

    @property
    def agent(self) -> Agent:
        return self._agent

    @property
    def session_manager(self) -> SessionManager:
        return self._session_manager

    @property
    def settings_manager(self) -> SettingsManager:
        return self._settings_manager

    @property
    def model(self) -> Model | None:
        return self._model

    @model.setter
    def model(self, value: Model | None) -> None:
        self._model = value

    @property
    def api_key(self) -> str | None:
        return self._api_key

    @property
    def messages(self) -> list[AgentMessage]:
        return self._agent.state.messages

    @property
    def is_compacting(self) -> bool:
        return self._compaction.is_compacting

    @property
    def retry_attempt(self) -> int:
        return self._compaction.retry_attempt

    # --- Turn handling ---

    async def handle_turn_end(self, message: AgentMessage) -> None:
        """Persist a finished turn's message and react to it.

        Transient errors are retried first. Otherwise the turn is checked
        for overflow or a full context. Raises ``ContextOverflowError`` when
        an overflow could not be compacted away.
        """
        if not self._connected:
            logger.debug("Ignoring turn end while compaction is running")
            return

        self._session_manager.append_message(message)
        if not isinstance(message, AssistantMessage):
            return

        if self._compaction.is_retryable_error(message):
            if await self._compaction.handle_retryable_error(message):
                return
        else:
            self._compaction.finish_retry(message)

        await self._compaction.check_compaction(message)

    async def check_before_prompt(self) -> None:
        """Compact before the next prompt if the context is already too large.

        Call before sending new user input. Unlike the turn-end check this
        also considers a last response that was aborted.
        """
        last_assistant = self._find_last_assistant_message()
        if last_assistant is not None:
            await self._compaction.check_compaction(last_assistant, skip_aborted=False)

    def _find_last_assistant_message(self) -> AssistantMessage | None:
        for message in reversed(self._agent.state.messages):
            if isinstance(message, AssistantMessage):
                return message
        return None

    # --- Session event emission ---

    def _emit_session_event(self, event: AgentSessionEvent) -> None:
        for listener in list(self._event_listeners):
            listener(event)

    def subscribe(self, fn: EventListener) -> Callable[[], None]:
        """Subscribe to agent session events. Returns unsubscribe function."""
        self._event_listeners.append(fn)

        def unsubscribe() -> None:
            if fn in self._event_listeners:
                self._event_listeners.remove(fn)

        return unsubscribe

    # --- Hooks ---

    def on_before_compact(self, handler: BeforeCompactHandler) -> Callable[[], None]:
        """Register a handler that may cancel a compaction or supply its result."""
        self._before_compact_handlers.append(handler)
        return lambda: self._before_compact_handlers.remove(handler)

    def on_compact(self, handler: CompactHandler) -> Callable[[], None]:
        self._compact_handlers.append(handler)
        return lambda: self._compact_handlers.remove(handler)

    async def _emit_before_compact(self, event: BeforeCompactEvent) -> CompactionHookResult | None:
        """Run before-compact handlers in order.

        The first cancellation wins. Otherwise the last supplied compaction
        is used.
        """
        outcome: CompactionHookResult | None = None
        for handler in list(self._before_compact_handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                logger.exception("before_compact handler failed")
                continue
            if result is None:
                continue
            if result.cancel:
                return result
            if result.compaction is not None:
                outcome = result
        return outcome

    async def _emit_compact(self, event: CompactEvent) -> None:
        for handler in list(self._compact_handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("compact handler failed")

    # --- Disconnect/reconnect ---

    def _disconnect_from_agent(self) -> None:
        self._connected = False

    def _reconnect_to_agent(self) -> None:
        self._connected = True

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run ``coro`` in the background, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_task_done)
        return task

    def _on_background_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background agent task failed", exc_info=error)

    # --- Lifecycle ---

    def abort(self) -> None:
        """Abort the pending retry and the running agent turn."""
        self._compaction.abort_retry()
        self._agent.abort()

    def dispose(self) -> None:
        self._disconnect_from_agent()
        self._event_listeners.clear()
        self._before_compact_handlers.clear()
        self._compact_handlers.clear()

    # --- Compaction (delegated) ---

    async def compact(self, custom_instructions: str | None = None) -> CompactionResult:
        return await self._compaction.compact_manual(custom_instructions)

    def abort_compaction(self) -> None:
        self._compaction.abort_compaction()

    # --- Retry (delegated) ---

    def abort_retry(self) -> None:
        self._compaction.abort_retry()

    async def wait_for_retry(self) -> None:
        await self._compaction.wait_for_retry()

    # --- Stats ---

    def get_context_usage(self) -> ContextUsageEstimate:
        """Estimate how many tokens the active context currently holds."""
        return estimate_context_tokens(self._agent.state.messages)


__all__ = [
    "Agent",
    "AgentSession",
    "AgentSessionConfig",
    "AgentState",
]
