"""OpenAI chat completions adapter."""

from __future__ import annotations

from typing import TYPE_CHECKING

from switchboard.providers._openai_compat import OpenAICompatibleAdapter
from switchboard.providers.base import (
    ModelCost,
    ProviderCapabilities,
    ProviderName,
    RateLimits,
)

if TYPE_CHECKING:
    from switchboard.config import ProviderConfig
    from switchboard.models import Request

# Reasoning models take ``reasoning_effort`` and ``max_completion_tokens``.
_REASONING_MODEL_PREFIXES = ("o1", "o3", "o4", "gpt-5")


def is_reasoning_model(model: str) -> bool:
    name = model.lower().rsplit("/", 1)[-1]
    return name.startswith(_REASONING_MODEL_PREFIXES)


OPENAI_COSTS: dict[str, ModelCost] = {
    "gpt-4": ModelCost(3e-5, 6e-5),
    "gpt-4-32k": ModelCost(6e-5, 1.2e-4),
    "gpt-4-turbo": ModelCost(1e-5, 3e-5),
    "gpt-4o": ModelCost(2.5e-6, 1e-5),
    "gpt-4o-mini": ModelCost(1.5e-7, 6e-7),
    "gpt-4.1": ModelCost(2e-6, 8e-6),
    "gpt-4.1-mini": ModelCost(4e-7, 1.6e-6),
    "gpt-4.1-nano": ModelCost(1e-7, 4e-7),
    "gpt-3.5-turbo": ModelCost(5e-7, 1.5e-6),
    "o1": ModelCost(1.5e-5, 6e-5),
    "o1-mini": ModelCost(1.1e-6, 4.4e-6),
    "o3": ModelCost(2e-6, 8e-6),
    "o3-mini": ModelCost(1.1e-6, 4.4e-6),
    "o4-mini": ModelCost(1.1e-6, 4.4e-6),
    "gpt-5": ModelCost(1.25e-6, 1e-5),
    "gpt-5-mini": ModelCost(2.5e-7, 2e-6),
    "gpt-5-nano": ModelCost(5e-8, 4e-7),
    "text-embedding-3-small": ModelCost(2e-8, 0.0),
    "text-embedding-3-large": ModelCost(1.3e-7, 0.0),
    "text-embedding-ada-002": ModelCost(1e-7, 0.0),
}


class OpenAIAdapter(OpenAICompatibleAdapter):
    name = ProviderName.OPENAI
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, embeddings=True)
    default_base_url = "https://api.openai.com/v1"
    cost_table = OPENAI_COSTS
    default_rate_limits = RateLimits(requests_per_minute=3500, tokens_per_minute=90000)

    def supports_reasoning(self, model: str) -> bool:
        return is_reasoning_model(model)

    def _max_tokens_field(self, request: Request) -> str:
        return "max_completion_tokens" if is_reasoning_model(request.model) else "max_tokens"

    def auth_headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = super().auth_headers(config)
        if config.organization:
            headers["OpenAI-Organization"] = config.organization
        return headers
