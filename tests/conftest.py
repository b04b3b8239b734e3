"""Pytest configuration and fixtures.

Provides transport test doubles, environment isolation, logging
configuration and automatic API test skipping. All fixtures here are autouse
unless noted.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

from switchboard.transport import HttpRequest, HttpResponse

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeStream:
    """Streaming response double yielding scripted byte chunks.

    ``hang=True`` keeps the stream open after the last chunk until the reader
    is cancelled, which is how cancellation tests model a slow provider.
    """

    chunks: list[bytes] = field(default_factory=list)
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    delay: float = 0.0
    hang: bool = False
    fail_with: BaseException | None = None
    closed: bool = False
    chunks_read: int = 0

    async def _iterate(self) -> Any:
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.chunks_read += 1
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with
        if self.hang:
            await asyncio.Event().wait()

    def aiter_bytes(self) -> Any:
        return self._iterate()

    async def aread(self) -> bytes:
        return self.body

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class FakeTransport:
    """Transport double returning scripted responses and streams in order.

    Exceptions in either script are raised instead of returned. Every request
    is recorded for assertions.
    """

    responses: list[HttpResponse | BaseException] = field(default_factory=list)
    streams: list[FakeStream | BaseException] = field(default_factory=list)
    delay: float = 0.0
    requests: list[HttpRequest] = field(default_factory=list)
    timeouts: list[float | None] = field(default_factory=list)
    closed: bool = False

    async def send(self, request: HttpRequest, *, timeout: float | None = None) -> HttpResponse:
        self.requests.append(request)
        self.timeouts.append(timeout)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.responses:
            return HttpResponse(200, {}, b"{}")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def open_stream(
        self, request: HttpRequest, *, timeout: float | None = None
    ) -> FakeStream:
        self.requests.append(request)
        self.timeouts.append(timeout)
        item = self.streams.pop(0) if self.streams else FakeStream()
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================

_PROVIDER_ENV_PREFIXES = (
    "SWITCHBOARD_",
    "OPENAI_",
    "ANTHROPIC_",
    "GEMINI_",
    "MISTRAL_",
    "AZURE_OPENAI_",
    "OPENROUTER_",
    "AWS_",
)


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears SWITCHBOARD_* and provider credential variables.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(_PROVIDER_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hypothesis").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# Shared constants and fixtures
# =============================================================================

OPENAI_MODEL = "gpt-4o-mini"
ANTHROPIC_MODEL = "claude-3-5-haiku-20241022"
GEMINI_MODEL = "gemini-2.0-flash"
MISTRAL_MODEL = "mistral-small-latest"
BEDROCK_MODEL = "anthropic.claude-3-5-haiku-20241022-v1:0"
OLLAMA_MODEL = "llama3.2"
OPENROUTER_MODEL = "openai/gpt-4o-mini"


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
