"""Provider capability interface.

Every backend is one concrete :class:`ProviderAdapter` subclass. Adapters are
stateless: request/response/chunk transforms are pure functions of their
inputs, so a single adapter instance serves any number of concurrent calls.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from switchboard.errors import ErrorKind, ErrorRecord, UnsupportedFeatureError
from switchboard.providers import _errors
from switchboard.transport import HttpRequest

if TYPE_CHECKING:
    from collections.abc import Mapping

    from switchboard.config import ProviderConfig
    from switchboard.models import (
        Delta,
        EmbeddingRequest,
        EmbeddingResponse,
        Request,
        Response,
        Usage,
    )
    from switchboard.transport import HttpResponse

StreamFraming = Literal["sse", "ndjson", "aws-eventstream"]


class ProviderName(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    MISTRAL = "mistral"
    BEDROCK = "bedrock"
    AZURE = "azure"
    OLLAMA = "ollama"
    OPENROUTER = "openrouter"


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags consulted before any network call."""

    streaming: bool = True
    function_calling: bool = True
    embeddings: bool = False
    stream_framing: StreamFraming = "sse"


@dataclass(frozen=True)
class ModelCost:
    """USD per token."""

    input: float = 0.0
    output: float = 0.0

    def cost(self, usage: Usage) -> float:
        return usage.prompt_tokens * self.input + usage.completion_tokens * self.output


@dataclass(frozen=True)
class RateLimits:
    """Documented default limits; actual limits depend on the account tier."""

    requests_per_minute: int | None = None
    tokens_per_minute: int | None = None


_FREE = ModelCost()


class ProviderAdapter(ABC):
    """Translate between the canonical model and one provider's wire protocol."""

    name: ClassVar[ProviderName]
    capabilities: ClassVar[ProviderCapabilities] = ProviderCapabilities()
    default_base_url: ClassVar[str] = ""
    cost_table: ClassVar[Mapping[str, ModelCost]] = {}
    model_aliases: ClassVar[Mapping[str, str]] = {}
    default_rate_limits: ClassVar[RateLimits] = RateLimits()

    # --- Capability queries -------------------------------------------------

    @property
    def supports_streaming(self) -> bool:
        return self.capabilities.streaming

    @property
    def supports_function_calling(self) -> bool:
        return self.capabilities.function_calling

    @property
    def supports_embeddings(self) -> bool:
        return self.capabilities.embeddings

    def supports_reasoning(self, model: str) -> bool:
        """Whether *model* accepts reasoning/thinking controls."""
        return False

    def resolve_model(self, model: str) -> str:
        return self.model_aliases.get(model, model)

    def cost_per_token(self, model: str) -> ModelCost:
        """Per-token cost; the longest matching table prefix wins, unknown models are free."""
        model = self.resolve_model(model)
        exact = self.cost_table.get(model)
        if exact is not None:
            return exact
        matches = [key for key in self.cost_table if model.startswith(key)]
        if not matches:
            return _FREE
        return self.cost_table[max(matches, key=len)]

    def rate_limits(self) -> RateLimits:
        return self.default_rate_limits

    # --- Validation ---------------------------------------------------------

    def _unsupported(self, feature: str, model: str | None = None) -> UnsupportedFeatureError:
        target = f"{self.name.value} model {model!r}" if model else self.name.value
        message = f"{feature} is not supported by {target}"
        return UnsupportedFeatureError(
            message,
            record=ErrorRecord.create(
                ErrorKind.UNSUPPORTED_FEATURE,
                message,
                provider=self.name.value,
                context={"feature": feature},
            ),
        )

    def validate_request(self, request: Request) -> None:
        """Reject requests using capabilities this provider lacks."""
        if request.stream and not self.supports_streaming:
            raise self._unsupported("Streaming")
        if request.uses_tools and not self.supports_function_calling:
            raise self._unsupported("Function calling")
        if request.uses_reasoning and not self.supports_reasoning(request.model):
            raise self._unsupported("Reasoning", request.model)

    def validate_embedding_request(self, request: EmbeddingRequest) -> None:
        if not self.supports_embeddings:
            raise self._unsupported("Embeddings")

    # --- Pure transforms ----------------------------------------------------

    @abstractmethod
    def transform_request(self, request: Request, config: ProviderConfig) -> dict[str, Any]:
        """Canonical request to provider wire body."""

    @abstractmethod
    def transform_response(self, body: Mapping[str, Any], *, model: str = "") -> Response:
        """Provider wire body to canonical response.

        ``model`` is used when the body does not name the answering model.
        """

    @abstractmethod
    def transform_streaming_chunk(self, frame: Mapping[str, Any]) -> Delta | None:
        """One decoded stream frame to a delta, or None for metadata-only frames."""

    def stream_usage(self, frame: Mapping[str, Any]) -> Usage | None:
        """Usage reported ahead of the finishing frame.

        The engine merges it into the usage of the delta carrying
        ``finish_reason``. Most providers report everything at the end.
        """
        return None

    def is_terminal_frame(self, frame: Mapping[str, Any]) -> bool:
        """Whether *frame* is the provider's end-of-stream sentinel."""
        return False

    def stream_error(self, frame: Mapping[str, Any]) -> ErrorRecord | None:
        """Classify an in-band error frame, or None for ordinary frames."""
        error = frame.get("error")
        if not error:
            return None
        return _errors.classify_body(self.name.value, error, streaming=True)

    def classify_error(self, response: HttpResponse) -> ErrorRecord:
        """Map a failed HTTP response to the shared taxonomy."""
        return _errors.classify_http(self.name.value, response)

    # --- HTTP assembly ------------------------------------------------------

    def base_url(self, config: ProviderConfig) -> str:
        return (config.base_url or self.default_base_url).rstrip("/")

    def auth_headers(self, config: ProviderConfig) -> dict[str, str]:
        if not config.api_key:
            return {}
        return {"Authorization": f"Bearer {config.api_key}"}

    @abstractmethod
    def chat_url(self, request: Request, config: ProviderConfig) -> str:
        """Endpoint for *request*; streaming requests may use a distinct URL."""

    def models_url(self, config: ProviderConfig) -> str:
        return f"{self.base_url(config)}/models"

    def _headers(self, config: ProviderConfig, *, stream: bool = False) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        headers.update(self.auth_headers(config))
        headers.update(config.extra_headers)
        return headers

    def sign(self, request: HttpRequest, config: ProviderConfig) -> HttpRequest:
        """Hook for providers that sign the final request."""
        return request

    def build_request(self, request: Request, config: ProviderConfig) -> HttpRequest:
        """Assemble method, URL, headers and body for a chat call."""
        http_request = HttpRequest(
            method="POST",
            url=self.chat_url(request, config),
            headers=self._headers(config, stream=request.stream),
            body=self.transform_request(request, config),
        )
        return self.sign(http_request, config)

    def health_request(self, config: ProviderConfig) -> HttpRequest:
        """A cheap authenticated GET that succeeds when the provider is reachable."""
        http_request = HttpRequest(
            method="GET", url=self.models_url(config), headers=self._headers(config)
        )
        return self.sign(http_request, config)

    # --- Embeddings ---------------------------------------------------------

    def embeddings_url(self, request: EmbeddingRequest, config: ProviderConfig) -> str:
        raise self._unsupported("Embeddings")

    def transform_embedding_request(
        self, request: EmbeddingRequest, config: ProviderConfig
    ) -> dict[str, Any]:
        raise self._unsupported("Embeddings")

    def transform_embedding_response(
        self, body: Mapping[str, Any], *, model: str = ""
    ) -> EmbeddingResponse:
        raise self._unsupported("Embeddings")

    def build_embedding_request(
        self, request: EmbeddingRequest, config: ProviderConfig
    ) -> HttpRequest:
        http_request = HttpRequest(
            method="POST",
            url=self.embeddings_url(request, config),
            headers=self._headers(config),
            body=self.transform_embedding_request(request, config),
        )
        return self.sign(http_request, config)
