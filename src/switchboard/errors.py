"""Error taxonomy and exception hierarchy for Switchboard.

Every failure, whatever its origin, is classified into an :class:`ErrorRecord`
with a stable :class:`ErrorKind` and a recoverability flag. Synchronous calls
raise a :class:`SwitchboardError` carrying the record; streams deliver the same
record in-band as an error delta.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping


class ErrorCategory(str, Enum):
    """The four kind families."""

    CLIENT = "client"
    PROVIDER = "provider"
    RESPONSE = "response"
    SYSTEM = "system"


class ErrorKind(str, Enum):
    """Stable error kinds shared by every provider."""

    # Client / configuration
    INVALID_REQUEST = "invalid-request"
    INVALID_CONFIG = "invalid-config"
    AUTHENTICATION = "authentication-error"
    AUTHORIZATION = "authorization-error"
    PROVIDER_NOT_FOUND = "provider-not-found"
    MODEL_NOT_FOUND = "model-not-found"
    UNSUPPORTED_FEATURE = "unsupported-feature"
    QUOTA_EXCEEDED = "quota-exceeded"
    # Provider / network
    RATE_LIMIT = "rate-limit"
    TIMEOUT = "timeout"
    CONNECTION = "connection-error"
    SERVER = "server-error"
    PROVIDER = "provider-error"
    # Response
    INVALID_RESPONSE = "invalid-response"
    STREAMING = "streaming-error"
    CONTENT_FILTER = "content-filter"
    # System
    INTERNAL = "internal-error"
    RESOURCE_EXHAUSTED = "resource-exhausted"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.INVALID_REQUEST: ErrorCategory.CLIENT,
    ErrorKind.INVALID_CONFIG: ErrorCategory.CLIENT,
    ErrorKind.AUTHENTICATION: ErrorCategory.CLIENT,
    ErrorKind.AUTHORIZATION: ErrorCategory.CLIENT,
    ErrorKind.PROVIDER_NOT_FOUND: ErrorCategory.CLIENT,
    ErrorKind.MODEL_NOT_FOUND: ErrorCategory.CLIENT,
    ErrorKind.UNSUPPORTED_FEATURE: ErrorCategory.CLIENT,
    ErrorKind.QUOTA_EXCEEDED: ErrorCategory.CLIENT,
    ErrorKind.RATE_LIMIT: ErrorCategory.PROVIDER,
    ErrorKind.TIMEOUT: ErrorCategory.PROVIDER,
    ErrorKind.CONNECTION: ErrorCategory.PROVIDER,
    ErrorKind.SERVER: ErrorCategory.PROVIDER,
    ErrorKind.PROVIDER: ErrorCategory.PROVIDER,
    ErrorKind.INVALID_RESPONSE: ErrorCategory.RESPONSE,
    ErrorKind.STREAMING: ErrorCategory.RESPONSE,
    ErrorKind.CONTENT_FILTER: ErrorCategory.RESPONSE,
    ErrorKind.INTERNAL: ErrorCategory.SYSTEM,
    ErrorKind.RESOURCE_EXHAUSTED: ErrorCategory.SYSTEM,
}

# Kinds whose recoverability depends on context (status code or cause) are
# absent here and resolved in ``default_recoverable``.
_RECOVERABLE: dict[ErrorKind, bool] = {
    ErrorKind.INVALID_REQUEST: False,
    ErrorKind.INVALID_CONFIG: False,
    ErrorKind.AUTHENTICATION: False,
    ErrorKind.AUTHORIZATION: False,
    ErrorKind.PROVIDER_NOT_FOUND: False,
    ErrorKind.MODEL_NOT_FOUND: False,
    ErrorKind.UNSUPPORTED_FEATURE: False,
    ErrorKind.QUOTA_EXCEEDED: False,
    ErrorKind.RATE_LIMIT: True,
    ErrorKind.TIMEOUT: True,
    ErrorKind.CONNECTION: True,
    ErrorKind.SERVER: True,
    ErrorKind.INVALID_RESPONSE: False,
    ErrorKind.CONTENT_FILTER: False,
    ErrorKind.INTERNAL: False,
    ErrorKind.RESOURCE_EXHAUSTED: True,
}


def default_recoverable(kind: ErrorKind, *, http_status: int | None = None) -> bool:
    """Return the default recoverability for *kind*.

    ``provider-error`` is recoverable only for 5xx statuses; ``streaming-error``
    defaults to non-recoverable unless the classifier says otherwise. Unknown
    failures never default to recoverable.
    """
    if kind is ErrorKind.PROVIDER:
        return isinstance(http_status, int) and http_status >= 500
    return _RECOVERABLE.get(kind, False)


@dataclass(frozen=True)
class ErrorRecord:
    """Structured, classified representation of a failure."""

    kind: ErrorKind
    message: str
    provider: str | None = None
    http_status: int | None = None
    provider_code: str | None = None
    retry_after: float | None = None
    recoverable: bool = False
    request_id: str | None = None
    context: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        recoverable: bool | None = None,
        provider: str | None = None,
        http_status: int | None = None,
        provider_code: str | None = None,
        retry_after: float | None = None,
        request_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> ErrorRecord:
        """Build a record, filling ``recoverable`` from the kind defaults."""
        if recoverable is None:
            recoverable = default_recoverable(kind, http_status=http_status)
        return cls(
            kind=kind,
            message=message,
            provider=provider,
            http_status=http_status,
            provider_code=provider_code,
            retry_after=retry_after,
            recoverable=recoverable,
            request_id=request_id,
            context=dict(context or {}),
        )

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    def summary(self) -> str:
        """One-line human summary of the failure."""
        parts = [self.message, f"Kind: {self.kind.value}"]
        if self.provider:
            parts.append(f"Provider: {self.provider}")
        if self.http_status is not None:
            parts.append(f"HTTP {self.http_status}")
        parts.append("Recoverable" if self.recoverable else "Not recoverable")
        if self.retry_after is not None:
            parts.append(f"Retry after {self.retry_after:g}s")
        return " | ".join(parts)

    def details(self) -> dict[str, Any]:
        """Plain-dict view suitable for structured logging."""
        out: dict[str, Any] = {
            "kind": self.kind.value,
            "category": self.category.value,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        optional = {
            "provider": self.provider,
            "http_status": self.http_status,
            "provider_code": self.provider_code,
            "retry_after": self.retry_after,
            "request_id": self.request_id,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        if self.context:
            out["context"] = dict(self.context)
        return out


class SwitchboardError(Exception):
    """Base exception for all Switchboard errors."""

    kind: ClassVar[ErrorKind] = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        record: ErrorRecord | None = None,
    ) -> None:
        super().__init__(message)
        self.hint = hint
        self.record = record or ErrorRecord.create(self.kind, message)

    @property
    def recoverable(self) -> bool:
        return self.record.recoverable

    @property
    def provider(self) -> str | None:
        return self.record.provider

    @property
    def http_status(self) -> int | None:
        return self.record.http_status

    @property
    def retry_after(self) -> float | None:
        return self.record.retry_after


class ConfigurationError(SwitchboardError):
    """Configuration validation or resolution failed."""

    kind = ErrorKind.INVALID_CONFIG


class InvalidRequestError(SwitchboardError):
    """A canonical request is malformed or rejected by the provider."""

    kind = ErrorKind.INVALID_REQUEST


class UnsupportedFeatureError(SwitchboardError):
    """The provider lacks a capability the request uses."""

    kind = ErrorKind.UNSUPPORTED_FEATURE


class ProviderNotFoundError(SwitchboardError):
    """No adapter is registered for the requested provider."""

    kind = ErrorKind.PROVIDER_NOT_FOUND


class AuthenticationError(SwitchboardError):
    """Credentials were rejected (401/403)."""

    kind = ErrorKind.AUTHENTICATION


class ProviderError(SwitchboardError):
    """The provider or the network failed the call.

    Adapters attach retry metadata to the record so the dispatcher can retry
    without brittle substring matching.
    """

    kind = ErrorKind.PROVIDER


class RateLimitError(ProviderError):
    """Rate limit exceeded (HTTP 429)."""

    kind = ErrorKind.RATE_LIMIT


class RequestTimeoutError(ProviderError):
    """The call did not complete before its deadline."""

    kind = ErrorKind.TIMEOUT


class ContentFilterError(SwitchboardError):
    """The provider refused to produce content."""

    kind = ErrorKind.CONTENT_FILTER


class InvalidResponseError(SwitchboardError):
    """The provider returned a body that could not be understood."""

    kind = ErrorKind.INVALID_RESPONSE


class ResourceExhaustedError(SwitchboardError):
    """A worker pool queue is full."""

    kind = ErrorKind.RESOURCE_EXHAUSTED


class InternalError(SwitchboardError):
    """A Switchboard internal error (bug) or invariant violation."""

    kind = ErrorKind.INTERNAL


_ERROR_CLASSES: dict[ErrorKind, type[SwitchboardError]] = {
    ErrorKind.INVALID_REQUEST: InvalidRequestError,
    ErrorKind.INVALID_CONFIG: ConfigurationError,
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.AUTHORIZATION: AuthenticationError,
    ErrorKind.PROVIDER_NOT_FOUND: ProviderNotFoundError,
    ErrorKind.MODEL_NOT_FOUND: InvalidRequestError,
    ErrorKind.UNSUPPORTED_FEATURE: UnsupportedFeatureError,
    ErrorKind.QUOTA_EXCEEDED: RateLimitError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.TIMEOUT: RequestTimeoutError,
    ErrorKind.CONNECTION: ProviderError,
    ErrorKind.SERVER: ProviderError,
    ErrorKind.PROVIDER: ProviderError,
    ErrorKind.INVALID_RESPONSE: InvalidResponseError,
    ErrorKind.STREAMING: ProviderError,
    ErrorKind.CONTENT_FILTER: ContentFilterError,
    ErrorKind.INTERNAL: InternalError,
    ErrorKind.RESOURCE_EXHAUSTED: ResourceExhaustedError,
}


def error_from_record(record: ErrorRecord, *, hint: str | None = None) -> SwitchboardError:
    """Return the exception class matching ``record.kind``, carrying the record."""
    cls = _ERROR_CLASSES.get(record.kind, SwitchboardError)
    return cls(record.message, hint=hint, record=record)


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
