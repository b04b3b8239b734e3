"""Shared provider-side error classification.

Adapters map HTTP status, headers and body into an ErrorRecord here so the
retry policy can stay bounded and deterministic without substring matching
scattered across providers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from email.utils import parsedate_to_datetime
import json
import re
import time
from typing import TYPE_CHECKING, Any

import httpx

from switchboard.errors import (
    ErrorKind,
    ErrorRecord,
    SwitchboardError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from switchboard.transport import HttpResponse

_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")
_QUOTA_MARKERS = ("quota", "billing", "credit balance", "insufficient_quota")
_REQUEST_ID_HEADERS = ("x-request-id", "request-id", "x-amzn-requestid", "apim-request-id")

_STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.INVALID_REQUEST,
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.AUTHORIZATION,
    404: ErrorKind.MODEL_NOT_FOUND,
    408: ErrorKind.TIMEOUT,
    413: ErrorKind.INVALID_REQUEST,
    422: ErrorKind.INVALID_REQUEST,
    429: ErrorKind.RATE_LIMIT,
    500: ErrorKind.SERVER,
    502: ErrorKind.SERVER,
    503: ErrorKind.SERVER,
    504: ErrorKind.SERVER,
}


def status_to_kind(status: int, body_text: str = "") -> ErrorKind:
    """Map an HTTP status (plus body hints for 429) to an error kind."""
    if status == 429 and any(m in body_text.lower() for m in _QUOTA_MARKERS):
        return ErrorKind.QUOTA_EXCEEDED
    return _STATUS_KINDS.get(status, ErrorKind.PROVIDER)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _retry_info_seconds(error: Any) -> float | None:
    """Extract retry delay from Google API-style RetryInfo in error details.

    Gemini error bodies are shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}

    The ``retryDelay`` value is a protobuf Duration string (e.g. ``"8s"``,
    ``"8.352104981s"``).
    """
    if not isinstance(error, Mapping):
        return None
    detail_list = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, Mapping):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def extract_retry_after(headers: Mapping[str, str], body: Any = None) -> float | None:
    """Find a retry-after delay in seconds from headers or a Google-style body."""
    raw_ms = _header(headers, "retry-after-ms")
    if raw_ms:
        try:
            return max(0.0, float(raw_ms) / 1000.0)
        except ValueError:
            pass

    raw = _header(headers, "retry-after")
    if raw and raw.strip():
        try:
            seconds = float(raw)
        except ValueError:
            seconds = _http_date_delta(raw)
        if seconds is not None and seconds >= 0:
            return seconds

    if isinstance(body, Mapping):
        return _retry_info_seconds(body.get("error", body))
    return None


def _http_date_delta(raw: str) -> float | None:
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def error_message(body: Any, fallback: str) -> tuple[str, str | None]:
    """Return ``(message, provider_code)`` from the common error body shapes."""
    if isinstance(body, Mapping):
        error = body.get("error", body)
        if isinstance(error, str):
            return error, None
        if isinstance(error, Mapping):
            message = error.get("message") or body.get("message") or fallback
            code = error.get("code") or error.get("type") or error.get("status")
            return str(message), str(code) if code is not None else None
    return fallback, None


def classify_http(
    provider: str,
    response: HttpResponse,
    *,
    kind: ErrorKind | None = None,
    provider_code: str | None = None,
) -> ErrorRecord:
    """Classify a failed HTTP response.

    Adapters with provider-specific codes pass ``kind``/``provider_code`` to
    override the status-based defaults.
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    text = response.text
    fallback = text[:500] if text else f"HTTP {response.status}"
    message, code = error_message(body, fallback)
    resolved = kind or status_to_kind(response.status, text)
    request_id = next(
        (v for v in (_header(response.headers, h) for h in _REQUEST_ID_HEADERS) if v),
        None,
    )
    return ErrorRecord.create(
        resolved,
        message,
        provider=provider,
        http_status=response.status,
        provider_code=provider_code or code,
        retry_after=extract_retry_after(response.headers, body),
        request_id=request_id,
    )


def classify_body(provider: str, error: Any, *, streaming: bool = False) -> ErrorRecord:
    """Classify an error object delivered inside a stream or 200 body."""
    message, code = error_message({"error": error}, "Provider reported an error")
    status = error.get("code") if isinstance(error, Mapping) else None
    status = status if isinstance(status, int) and 100 <= status <= 599 else None
    kind = status_to_kind(status, message) if status else ErrorKind.PROVIDER
    if streaming and kind is ErrorKind.PROVIDER:
        kind = ErrorKind.STREAMING
    recoverable = None
    if kind is ErrorKind.STREAMING:
        recoverable = bool(code and ("overloaded" in code or "unavailable" in code.lower()))
    return ErrorRecord.create(
        kind,
        message,
        provider=provider,
        http_status=status,
        provider_code=code,
        recoverable=recoverable,
        retry_after=_retry_info_seconds(error),
    )


def _is_network_error(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TransportError, ConnectionError, OSError))


def classify_exception(
    exc: BaseException, provider: str | None, *, streaming: bool = False
) -> ErrorRecord:
    """Map a transport or decoding exception into an ErrorRecord.

    Already-classified Switchboard errors keep their record. Mid-stream network
    failures become recoverable ``streaming-error`` records.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    for e in _walk_exception_chain(exc):
        if isinstance(e, SwitchboardError):
            return e.record

    context = {"exception": type(exc).__name__}
    message = str(exc) or type(exc).__name__
    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            kind = ErrorKind.STREAMING if streaming else ErrorKind.TIMEOUT
            return ErrorRecord.create(
                kind, f"Request timed out: {message}", provider=provider,
                recoverable=True, context=context,
            )
        if _is_network_error(e):
            kind = ErrorKind.STREAMING if streaming else ErrorKind.CONNECTION
            return ErrorRecord.create(
                kind, f"Connection failed: {message}", provider=provider,
                recoverable=True, context=context,
            )
        if isinstance(e, json.JSONDecodeError):
            kind = ErrorKind.STREAMING if streaming else ErrorKind.INVALID_RESPONSE
            return ErrorRecord.create(
                kind, f"Malformed provider payload: {message}", provider=provider,
                recoverable=False, context=context,
            )
    kind = ErrorKind.STREAMING if streaming else ErrorKind.INTERNAL
    return ErrorRecord.create(
        kind, message, provider=provider, recoverable=False, context=context
    )


def hint_for(record: ErrorRecord) -> str | None:
    """Generate a hint for failures where a next step is obvious."""
    if record.kind in {ErrorKind.AUTHENTICATION, ErrorKind.AUTHORIZATION}:
        return "Check credentials/permissions in the ProviderConfig (api_key or cloud keys)."
    if record.kind is ErrorKind.MODEL_NOT_FOUND:
        return "Check the model identifier, or the Azure deployment / Bedrock model id."
    if record.kind is ErrorKind.QUOTA_EXCEEDED:
        return "The account's quota or credit is exhausted; retrying will not help."
    if record.kind is ErrorKind.RESOURCE_EXHAUSTED:
        return "Raise the pool queue size in DispatcherSettings or apply backpressure."
    return None
