"""Transport boundary: plain request/response values and an injectable client.

Adapters only produce :class:`HttpRequest` values and consume
:class:`HttpResponse` values or a byte stream. Anything that satisfies the
:class:`Transport` protocol can carry them; :class:`HttpxTransport` is the
default.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpRequest:
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Mapping[str, Any] | None = None

    def content(self) -> bytes | None:
        """Serialized JSON body, or None for bodiless requests."""
        if self.body is None:
            return None
        return json.dumps(self.body, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON; raises ``ValueError`` on malformed bodies."""
        return json.loads(self.body) if self.body else {}

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@runtime_checkable
class StreamingHttpResponse(Protocol):
    """An open response whose body is read incrementally."""

    @property
    def status(self) -> int: ...

    @property
    def headers(self) -> Mapping[str, str]: ...

    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aread(self) -> bytes: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class Transport(Protocol):
    """Carries requests to a provider; owns sockets and TLS."""

    async def send(self, request: HttpRequest, *, timeout: float | None = None) -> HttpResponse: ...

    async def open_stream(
        self, request: HttpRequest, *, timeout: float | None = None
    ) -> StreamingHttpResponse: ...

    async def aclose(self) -> None: ...


class _HttpxStream:
    """Adapts an open ``httpx.Response`` to :class:`StreamingHttpResponse`."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def status(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> Mapping[str, str]:
        return self._response.headers

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aread(self) -> bytes:
        return await self._response.aread()

    async def aclose(self) -> None:
        await self._response.aclose()


class HttpxTransport:
    """Default transport backed by a shared ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _build(self, request: HttpRequest, timeout: float | None) -> httpx.Request:
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout)
        return self._get_client().build_request(
            request.method,
            request.url,
            headers=dict(request.headers),
            content=request.content(),
            **kwargs,
        )

    async def send(self, request: HttpRequest, *, timeout: float | None = None) -> HttpResponse:
        logger.debug("%s %s", request.method, request.url)
        response = await self._get_client().send(self._build(request, timeout))
        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )

    async def open_stream(
        self, request: HttpRequest, *, timeout: float | None = None
    ) -> StreamingHttpResponse:
        logger.debug("%s %s (stream)", request.method, request.url)
        response = await self._get_client().send(self._build(request, timeout), stream=True)
        return _HttpxStream(response)

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        client = self._client
        if client is None or not self._owns_client:
            return
        self._client = None
        await client.aclose()
