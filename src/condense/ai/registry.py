"""Registry of completion providers keyed by API name."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from condense.ai.types import AssistantMessage, Context, Model, SimpleStreamOptions

CompleteFunction = Callable[[Model, Context, SimpleStreamOptions | None], Awaitable[AssistantMessage]]


@dataclass
class ApiProvider:
    """A completion backend for one API.

    ``complete`` returns the final assistant message. Transport failures are
    reported in-band with ``stop_reason="error"`` and ``error_message`` set,
    not raised.
    """

    api: str
    complete: CompleteFunction


@dataclass
class _RegisteredProvider:
    provider: ApiProvider
    source_id: str | None = None


_registry: dict[str, _RegisteredProvider] = {}


def register_api_provider(provider: ApiProvider, source_id: str | None = None) -> None:
    """Register (or replace) the provider for ``provider.api``."""
    _registry[provider.api] = _RegisteredProvider(provider=provider, source_id=source_id)


def get_api_provider(api: str) -> ApiProvider | None:
    entry = _registry.get(api)
    return entry.provider if entry else None


def get_api_providers() -> list[ApiProvider]:
    return [entry.provider for entry in _registry.values()]


def unregister_api_providers(source_id: str) -> None:
    """Remove all providers registered with a given source ID."""
    to_remove = [api for api, entry in _registry.items() if entry.source_id == source_id]
    for api in to_remove:
        del _registry[api]


def clear_api_providers() -> None:
    _registry.clear()
