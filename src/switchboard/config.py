"""Configuration: resolved provider targets and dispatcher settings.

``ProviderConfig`` is the already-resolved ``{provider, model, credentials,
base_url}`` value handed to every call; how it was chosen is the caller's
business. ``DispatcherSettings`` sizes the worker pools and the retry policy
and can be read from ``SWITCHBOARD_*`` environment variables.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from typing import Any

import dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from switchboard.errors import ConfigurationError, ProviderNotFoundError
from switchboard.providers.base import ProviderName
from switchboard.retry import RetryPolicy

_KEYLESS_PROVIDERS = frozenset({ProviderName.OLLAMA, ProviderName.BEDROCK})


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable, read-only target for one or many concurrent calls.

    Example:
        config = ProviderConfig(provider="anthropic", model="claude-3-5-haiku-latest", api_key=key)
    """

    provider: ProviderName
    model: str
    api_key: str | None = None
    base_url: str | None = None
    #: Azure deployment name; defaults to ``model``.
    deployment: str | None = None
    #: Azure ``api-version`` query parameter.
    api_version: str | None = None
    #: AWS region for Bedrock.
    region: str | None = None
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_session_token: str | None = None
    organization: str | None = None
    #: Per-attempt timeout; falls back to ``DispatcherSettings.call_timeout_s``.
    timeout_s: float | None = None
    extra_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Normalize the provider and validate credentials."""
        try:
            provider = ProviderName(
                self.provider.strip().lower() if isinstance(self.provider, str) else self.provider
            )
        except ValueError:
            supported = ", ".join(p.value for p in ProviderName)
            raise ProviderNotFoundError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Supported providers: {supported}",
            ) from None
        object.__setattr__(self, "provider", provider)

        if not self.model or not self.model.strip():
            raise ConfigurationError(
                "model must be a non-empty string",
                hint="Pass the provider's model identifier, e.g. model='gpt-4o-mini'.",
            )
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="Omit timeout_s to use the dispatcher default.",
            )

        if provider is ProviderName.AZURE and not self.base_url:
            raise ConfigurationError(
                "Azure requires base_url",
                hint="Use your resource endpoint, e.g. https://<name>.openai.azure.com",
            )
        if provider is ProviderName.BEDROCK and not self.api_key:
            if not (self.aws_access_key_id and self.aws_secret_access_key):
                raise ConfigurationError(
                    "Bedrock requires an API key or AWS access keys",
                    hint="Pass api_key=... or aws_access_key_id/aws_secret_access_key.",
                )
        if provider not in _KEYLESS_PROVIDERS and not self.api_key:
            raise ConfigurationError(
                f"API key required for {provider.value}",
                hint="Pass api_key=... when building the ProviderConfig.",
            )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"ProviderConfig(provider={self.provider.value!r}, model={self.model!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, base_url={self.base_url!r})"
        )

    __repr__ = __str__


class DispatcherSettings(BaseModel):
    """Pool sizing, stream buffering and retry knobs for a Dispatcher."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_workers: int = Field(default=16, ge=1)
    request_queue_size: int = Field(default=256, ge=1)
    retry_workers: int = Field(default=4, ge=1)
    retry_queue_size: int = Field(default=64, ge=1)
    health_workers: int = Field(default=2, ge=1)
    health_queue_size: int = Field(default=16, ge=1)
    monitor_workers: int = Field(default=1, ge=1)
    monitor_queue_size: int = Field(default=4, ge=1)

    max_streams: int = Field(default=64, ge=1)
    stream_buffer_size: int = Field(default=64, ge=1)
    stream_poll_interval_s: float = Field(default=0.1, gt=0)

    call_timeout_s: float = Field(default=60.0, gt=0)
    shutdown_timeout_s: float = Field(default=5.0, ge=0)
    utilization_warning: float = Field(default=0.8, gt=0, le=1)

    retry_max_attempts: int = Field(default=3, ge=0)
    retry_base_delay_s: float = Field(default=1.0, ge=0)
    retry_max_delay_s: float = Field(default=30.0, ge=0)
    retry_max_elapsed_s: float | None = Field(default=120.0, ge=0)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_s=self.retry_base_delay_s,
            max_delay_s=self.retry_max_delay_s,
            max_elapsed_s=self.retry_max_elapsed_s,
        )


_ENV_PREFIX = "SWITCHBOARD_"


def _env_values() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in DispatcherSettings.model_fields:
        raw = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
        if raw is not None and raw.strip():
            values[name] = raw.strip()
    return values


def load_settings(overrides: Mapping[str, Any] | None = None) -> DispatcherSettings:
    """Resolve settings with precedence: overrides > environment > defaults.

    ``.env`` files are loaded first via python-dotenv; existing environment
    variables are never overwritten by them.
    """
    dotenv.load_dotenv()
    values = _env_values()
    values.update(overrides or {})
    try:
        return DispatcherSettings(**values)
    except ValidationError as exc:
        first = exc.errors()[0]
        field_name = ".".join(str(p) for p in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid dispatcher setting {field_name!r}: {first.get('msg')}",
            hint=f"Check {_ENV_PREFIX}{field_name.upper()} or the override you passed.",
        ) from exc
