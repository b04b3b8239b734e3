"""OpenRouter adapter.

OpenRouter fronts many upstream providers behind the OpenAI dialect. Model
ids are namespaced (``anthropic/claude-3.5-sonnet``) and pass through as-is.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from switchboard.errors import ErrorKind
from switchboard.providers import _errors
from switchboard.providers._openai_compat import OpenAICompatibleAdapter
from switchboard.providers.base import (
    ModelCost,
    ProviderCapabilities,
    ProviderName,
    RateLimits,
)

if TYPE_CHECKING:
    from switchboard.config import ProviderConfig
    from switchboard.errors import ErrorRecord
    from switchboard.models import Request
    from switchboard.transport import HttpResponse

DEFAULT_REFERER = "https://github.com/switchboard-llm/switchboard"
DEFAULT_TITLE = "switchboard"

OPENROUTER_COSTS: dict[str, ModelCost] = {
    "openai/gpt-4o": ModelCost(2.5e-6, 1e-5),
    "openai/gpt-4o-mini": ModelCost(1.5e-7, 6e-7),
    "anthropic/claude-3.5-sonnet": ModelCost(3e-6, 1.5e-5),
    "anthropic/claude-3-haiku": ModelCost(2.5e-7, 1.25e-6),
    "google/gemini-2.0-flash-001": ModelCost(1e-7, 4e-7),
    "meta-llama/llama-3.1-70b-instruct": ModelCost(1.2e-7, 3e-7),
    "mistralai/mistral-large": ModelCost(2e-6, 6e-6),
}


class OpenRouterAdapter(OpenAICompatibleAdapter):
    name = ProviderName.OPENROUTER
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, embeddings=False)
    default_base_url = "https://openrouter.ai/api/v1"
    cost_table = OPENROUTER_COSTS
    default_rate_limits = RateLimits(requests_per_minute=200)

    def supports_reasoning(self, model: str) -> bool:
        # Unsupported upstreams ignore the reasoning field.
        return True

    def auth_headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = super().auth_headers(config)
        headers["HTTP-Referer"] = DEFAULT_REFERER
        headers["X-Title"] = DEFAULT_TITLE
        return headers

    def _apply_reasoning(self, body: dict[str, Any], request: Request) -> None:
        if request.reasoning_effort is not None:
            body["reasoning"] = {"effort": request.reasoning_effort}
        elif request.thinking is not None and request.thinking.enabled:
            budget = request.thinking.budget_tokens
            body["reasoning"] = {"max_tokens": budget} if budget else {"enabled": True}

    def classify_error(self, response: HttpResponse) -> ErrorRecord:
        if response.status == 402:
            return _errors.classify_http(
                self.name.value, response, kind=ErrorKind.QUOTA_EXCEEDED
            )
        return _errors.classify_http(self.name.value, response)
