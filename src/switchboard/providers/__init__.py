"""Provider adapters and the static dispatch table."""

from __future__ import annotations

from types import MappingProxyType
from typing import TYPE_CHECKING

from switchboard.errors import ErrorKind, ErrorRecord, ProviderNotFoundError
from switchboard.providers.anthropic import AnthropicAdapter
from switchboard.providers.azure import AzureAdapter
from switchboard.providers.base import (
    ModelCost,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderName,
    RateLimits,
)
from switchboard.providers.bedrock import BedrockAdapter
from switchboard.providers.gemini import GeminiAdapter
from switchboard.providers.mistral import MistralAdapter
from switchboard.providers.ollama import OllamaAdapter
from switchboard.providers.openai import OpenAIAdapter
from switchboard.providers.openrouter import OpenRouterAdapter

if TYPE_CHECKING:
    from collections.abc import Mapping

ADAPTERS: Mapping[ProviderName, ProviderAdapter] = MappingProxyType(
    {
        ProviderName.OPENAI: OpenAIAdapter(),
        ProviderName.ANTHROPIC: AnthropicAdapter(),
        ProviderName.GEMINI: GeminiAdapter(),
        ProviderName.MISTRAL: MistralAdapter(),
        ProviderName.BEDROCK: BedrockAdapter(),
        ProviderName.AZURE: AzureAdapter(),
        ProviderName.OLLAMA: OllamaAdapter(),
        ProviderName.OPENROUTER: OpenRouterAdapter(),
    }
)


def get_adapter(provider: ProviderName | str) -> ProviderAdapter:
    """Return the adapter for *provider*."""
    try:
        return ADAPTERS[ProviderName(provider)]
    except (KeyError, ValueError):
        message = f"Unknown provider: {provider!r}"
        raise ProviderNotFoundError(
            message,
            hint=f"Supported providers: {', '.join(p.value for p in ProviderName)}",
            record=ErrorRecord.create(ErrorKind.PROVIDER_NOT_FOUND, message),
        ) from None


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "AzureAdapter",
    "BedrockAdapter",
    "GeminiAdapter",
    "MistralAdapter",
    "ModelCost",
    "OllamaAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderName",
    "RateLimits",
    "get_adapter",
]
