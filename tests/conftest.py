from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from condense.ai.registry import ApiProvider, clear_api_providers, register_api_provider
from condense.ai.types import AssistantMessage, Context, Model, SimpleStreamOptions, TextContent

FAKE_API = "fake-api"


def _prompt_text(context: Context) -> str:
    message = context.messages[-1]
    if isinstance(message.content, str):
        return message.content
    return "".join(block.text for block in message.content if isinstance(block, TextContent))


class ScriptedProvider:
    """Completion backend that records requests and replays queued responses."""

    def __init__(self) -> None:
        self.requests: list[tuple[Context, SimpleStreamOptions | None]] = []
        self.responses: list[AssistantMessage] = []
        self.responder: Callable[[str], str] | None = None
        self.gate: asyncio.Event | None = None

    @property
    def prompts(self) -> list[str]:
        return [_prompt_text(context) for context, _ in self.requests]

    def reply(self, text: str) -> None:
        self.responses.append(AssistantMessage(content=[TextContent(text=text)]))

    def fail(self, error_message: str) -> None:
        self.responses.append(AssistantMessage(stop_reason="error", error_message=error_message))

    async def complete(
        self,
        model: Model,
        context: Context,
        options: SimpleStreamOptions | None,
    ) -> AssistantMessage:
        self.requests.append((context, options))
        if self.gate is not None:
            await self.gate.wait()
        if self.responses:
            return self.responses.pop(0)
        text = self.responder(_prompt_text(context)) if self.responder else "Summary of earlier work"
        return AssistantMessage(
            content=[TextContent(text=text)],
            api=model.api,
            provider=model.provider,
            model=model.id,
        )


@pytest.fixture
def provider():
    scripted = ScriptedProvider()
    register_api_provider(ApiProvider(api=FAKE_API, complete=scripted.complete), source_id="tests")
    yield scripted
    clear_api_providers()


async def wait_until(predicate: Callable[[], bool], attempts: int = 200) -> None:
    """Yield to the loop until ``predicate`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition not reached")


@pytest.fixture
def until():
    return wait_until
