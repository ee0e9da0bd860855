"""Provider adapters and the registry that builds them from configuration."""
from __future__ import annotations

from typing import Dict, Iterable, List, Type

from narrative_guard.config.models import ProviderConfig
from .anthropic_provider import AnthropicAdapter
from .base import (
    AdapterError,
    AdapterErrorKind,
    AuthFailure,
    ConversationTurn,
    GeneratedContent,
    MalformedResponse,
    NetworkError,
    ProviderAdapter,
    ProviderTimeout,
    RateLimited,
)
from .offline_provider import OfflineStorytellerAdapter
from .openai_provider import OpenAIAdapter

ADAPTER_KINDS: Dict[str, Type[ProviderAdapter]] = {
    OpenAIAdapter.kind: OpenAIAdapter,
    AnthropicAdapter.kind: AnthropicAdapter,
    OfflineStorytellerAdapter.kind: OfflineStorytellerAdapter,
}


def build_adapter(config: ProviderConfig) -> ProviderAdapter:
    """Instantiate the adapter class registered for the provider's kind."""
    try:
        adapter_cls = ADAPTER_KINDS[config.kind]
    except KeyError:
        raise ValueError(f"Unsupported provider kind: {config.kind}") from None
    return adapter_cls(config)


def build_adapters(configs: Iterable[ProviderConfig]) -> Dict[str, ProviderAdapter]:
    return {config.name: build_adapter(config) for config in configs}


__all__: List[str] = [
    "ADAPTER_KINDS",
    "AdapterError",
    "AdapterErrorKind",
    "AnthropicAdapter",
    "AuthFailure",
    "ConversationTurn",
    "GeneratedContent",
    "MalformedResponse",
    "NetworkError",
    "OfflineStorytellerAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderTimeout",
    "RateLimited",
    "build_adapter",
    "build_adapters",
]
