"""Azure OpenAI adapter.

Azure serves OpenAI models from per-resource deployments. The wire format is
OpenAI's; only the URL layout, the ``api-key`` header and content-filter
error reporting differ.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import quote

from switchboard.errors import ErrorKind
from switchboard.providers import _errors
from switchboard.providers._openai_compat import OpenAICompatibleAdapter
from switchboard.providers.base import ProviderCapabilities, ProviderName, RateLimits
from switchboard.providers.openai import OPENAI_COSTS, is_reasoning_model

if TYPE_CHECKING:
    from switchboard.config import ProviderConfig
    from switchboard.errors import ErrorRecord
    from switchboard.models import EmbeddingRequest, Request
    from switchboard.transport import HttpResponse

DEFAULT_API_VERSION = "2024-10-21"


class AzureAdapter(OpenAICompatibleAdapter):
    name = ProviderName.AZURE
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, embeddings=True)
    cost_table = OPENAI_COSTS
    default_rate_limits = RateLimits(requests_per_minute=300, tokens_per_minute=240000)

    def supports_reasoning(self, model: str) -> bool:
        return is_reasoning_model(model)

    def _max_tokens_field(self, request: Request) -> str:
        return "max_completion_tokens" if is_reasoning_model(request.model) else "max_tokens"

    def auth_headers(self, config: ProviderConfig) -> dict[str, str]:
        return {"api-key": config.api_key} if config.api_key else {}

    def _deployment_url(self, config: ProviderConfig, deployment: str, path: str) -> str:
        version = config.api_version or DEFAULT_API_VERSION
        return (
            f"{self.base_url(config)}/openai/deployments/{quote(deployment, safe='')}"
            f"/{path}?api-version={version}"
        )

    def chat_url(self, request: Request, config: ProviderConfig) -> str:
        return self._deployment_url(
            config, config.deployment or config.model, "chat/completions"
        )

    def embeddings_url(self, request: EmbeddingRequest, config: ProviderConfig) -> str:
        return self._deployment_url(config, config.deployment or request.model, "embeddings")

    def models_url(self, config: ProviderConfig) -> str:
        version = config.api_version or DEFAULT_API_VERSION
        return f"{self.base_url(config)}/openai/models?api-version={version}"

    def classify_error(self, response: HttpResponse) -> ErrorRecord:
        record = _errors.classify_http(self.name.value, response)
        # Prompt filtering is reported as a 400 with code "content_filter".
        if record.provider_code == "content_filter" or "content management policy" in (
            record.message.lower()
        ):
            return _errors.classify_http(
                self.name.value, response, kind=ErrorKind.CONTENT_FILTER
            )
        return record
