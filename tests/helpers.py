"""Test helpers (small, reusable builders).

Keep this file tiny and purpose-built: wire payload builders and canonical
request shortcuts shared by the provider, streaming and dispatcher suites.
"""

from __future__ import annotations

import binascii
import json
import struct
from typing import Any

from switchboard.config import ProviderConfig
from switchboard.models import Message, Request
from switchboard.transport import HttpResponse
from tests.conftest import (
    ANTHROPIC_MODEL,
    BEDROCK_MODEL,
    GEMINI_MODEL,
    MISTRAL_MODEL,
    OLLAMA_MODEL,
    OPENAI_MODEL,
    OPENROUTER_MODEL,
)

DEFAULT_MODELS = {
    "openai": OPENAI_MODEL,
    "anthropic": ANTHROPIC_MODEL,
    "gemini": GEMINI_MODEL,
    "mistral": MISTRAL_MODEL,
    "bedrock": BEDROCK_MODEL,
    "azure": OPENAI_MODEL,
    "ollama": OLLAMA_MODEL,
    "openrouter": OPENROUTER_MODEL,
}


def config_for(provider: str, model: str | None = None, **kwargs: Any) -> ProviderConfig:
    """A valid ProviderConfig for *provider* with test credentials."""
    values: dict[str, Any] = {"api_key": "test-key"}
    if provider == "ollama":
        values = {}
    if provider == "azure":
        values["base_url"] = "https://example-resource.openai.azure.com"
    values.update(kwargs)
    return ProviderConfig(provider=provider, model=model or DEFAULT_MODELS[provider], **values)


def chat(model: str, *messages: Message, **kwargs: Any) -> Request:
    """A canonical request; defaults to a single user turn."""
    return Request(model=model, messages=messages or (Message.user("Hi"),), **kwargs)


def json_response(
    body: Any, status: int = 200, headers: dict[str, str] | None = None
) -> HttpResponse:
    return HttpResponse(status, headers or {}, json.dumps(body).encode("utf-8"))


def sse(*events: Any) -> bytes:
    """Encode SSE events: dicts become ``data:`` JSON, strings go verbatim.

    A ``(name, payload)`` tuple adds an ``event:`` line.
    """
    out = []
    for event in events:
        name = None
        if isinstance(event, tuple):
            name, event = event
        data = event if isinstance(event, str) else json.dumps(event)
        prefix = f"event: {name}\n" if name else ""
        out.append(f"{prefix}data: {data}\n\n")
    return "".join(out).encode("utf-8")


def ndjson(*objects: Any) -> bytes:
    return "".join(json.dumps(o) + "\n" for o in objects).encode("utf-8")


def event_stream_message(headers: dict[str, str], payload: Any) -> bytes:
    """Encode one AWS event-stream message with string headers."""
    raw_headers = b""
    for name, value in headers.items():
        encoded_name = name.encode("utf-8")
        encoded_value = value.encode("utf-8")
        raw_headers += (
            struct.pack(">B", len(encoded_name))
            + encoded_name
            + b"\x07"
            + struct.pack(">H", len(encoded_value))
            + encoded_value
        )
    body = json.dumps(payload).encode("utf-8") if payload is not None else b""
    total = 12 + len(raw_headers) + len(body) + 4
    prelude = struct.pack(">II", total, len(raw_headers))
    prelude += struct.pack(">I", binascii.crc32(prelude))
    message = prelude + raw_headers + body
    return message + struct.pack(">I", binascii.crc32(message))


def bedrock_event(event_type: str, payload: Any) -> bytes:
    return event_stream_message(
        {":message-type": "event", ":event-type": event_type, ":content-type": "application/json"},
        payload,
    )


def bedrock_exception(exception_type: str, message: str) -> bytes:
    return event_stream_message(
        {":message-type": "exception", ":exception-type": exception_type},
        {"message": message},
    )


def split_every(data: bytes, size: int) -> list[bytes]:
    """Split *data* into *size*-byte chunks to exercise incremental decoding."""
    return [data[i : i + size] for i in range(0, len(data), size)]
