"""Entry point for one-shot model completions.

Dispatches to the provider registered for the model's API and supports
cooperative cancellation through an ``asyncio.Event``.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

from condense.ai.registry import ApiProvider, get_api_provider
from condense.ai.types import AssistantMessage

if TYPE_CHECKING:
    from condense.ai.types import Context, Model, SimpleStreamOptions


def _resolve_api_provider(api: str) -> ApiProvider:
    provider = get_api_provider(api)
    if provider is None:
        raise ValueError(f"No API provider registered for api: {api}")
    return provider


def _aborted_message(model: Model) -> AssistantMessage:
    return AssistantMessage(
        api=model.api,
        provider=model.provider,
        model=model.id,
        stop_reason="aborted",
        error_message="Request was aborted",
        timestamp=int(time.time() * 1000),
    )


async def complete_simple(
    model: Model,
    context: Context,
    options: SimpleStreamOptions | None = None,
    *,
    abort_event: asyncio.Event | None = None,
) -> AssistantMessage:
    """Run a completion and return the final assistant message.

    If ``abort_event`` is set before or during the request, the provider call
    is cancelled and an ``aborted`` message is returned in its place.
    """
    provider = _resolve_api_provider(model.api)

    if abort_event is None:
        return await provider.complete(model, context, options)

    if abort_event.is_set():
        return _aborted_message(model)

    request = asyncio.ensure_future(provider.complete(model, context, options))
    abort_wait = asyncio.ensure_future(abort_event.wait())
    try:
        done, _ = await asyncio.wait({request, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        abort_wait.cancel()
        if not request.done():
            request.cancel()

    if request in done:
        return request.result()
    return _aborted_message(model)
