from typing import Callable, Iterable

import httpx

from llm_meter.errors import UnsupportedProviderError
from llm_meter.provider.anthropic import AnthropicAdapter
from llm_meter.provider.base import ProviderAdapter
from llm_meter.provider.openai import OpenAIAdapter

# configured provider name -> adapter factory
ADAPTERS: "dict[str, Callable[[httpx.AsyncClient | None], ProviderAdapter]]" = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
}


def supported_providers() -> "list[str]":
    return sorted(ADAPTERS)


def build_adapter(
    name: "str",
    client: "httpx.AsyncClient | None" = None,
) -> "ProviderAdapter":
    """
    builds the adapter registered for a provider name.
    """
    factory = ADAPTERS.get(name.strip().lower())
    if factory is None:
        raise UnsupportedProviderError(name)
    return factory(client)


def build_adapters(names: "Iterable[str]") -> "dict[str, ProviderAdapter]":
    """
    builds one adapter per supported name, skipping names
    without an adapter.
    """
    adapters: "dict[str, ProviderAdapter]" = {}
    for name in names:
        if name in ADAPTERS and name not in adapters:
            adapters[name] = build_adapter(name)
    return adapters
