"""Ollama local server adapter.

Ollama streams newline-delimited JSON objects rather than SSE; the final
object has ``done: true`` and carries the token counts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
import uuid

from switchboard.errors import ErrorKind
from switchboard.models import Choice, Delta, FinishReason, Message, Response, Role, Usage
from switchboard.providers import _errors
from switchboard.providers.base import ProviderAdapter, ProviderCapabilities, ProviderName

if TYPE_CHECKING:
    from collections.abc import Mapping

    from switchboard.config import ProviderConfig
    from switchboard.errors import ErrorRecord
    from switchboard.models import Request
    from switchboard.transport import HttpResponse

_REASONING_MODEL_PREFIXES = ("deepseek-r1", "qwen3", "gpt-oss", "magistral")

_DONE_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
}


def _finish_reason(frame: Mapping[str, Any]) -> FinishReason | None:
    if not frame.get("done"):
        return None
    return _DONE_REASONS.get(str(frame.get("done_reason", "stop")), FinishReason.STOP)


def _usage(frame: Mapping[str, Any]) -> Usage:
    return Usage.of(frame.get("prompt_eval_count"), frame.get("eval_count"))


class OllamaAdapter(ProviderAdapter):
    name = ProviderName.OLLAMA
    capabilities = ProviderCapabilities(
        streaming=True,
        function_calling=False,
        embeddings=False,
        stream_framing="ndjson",
    )
    default_base_url = "http://localhost:11434"

    def supports_reasoning(self, model: str) -> bool:
        return model.lower().startswith(_REASONING_MODEL_PREFIXES)

    def chat_url(self, request: Request, config: ProviderConfig) -> str:
        return f"{self.base_url(config)}/api/chat"

    def models_url(self, config: ProviderConfig) -> str:
        return f"{self.base_url(config)}/api/tags"

    def _headers(self, config: ProviderConfig, *, stream: bool = False) -> dict[str, str]:
        headers = super()._headers(config, stream=stream)
        if stream:
            headers["Accept"] = "application/x-ndjson"
        return headers

    def transform_request(self, request: Request, config: ProviderConfig) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if request.stop:
            options["stop"] = list(request.stop)
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": m.role.value, "content": m.content or ""} for m in request.messages
            ],
            # Ollama streams unless told otherwise.
            "stream": request.stream,
        }
        if options:
            body["options"] = options
        if request.uses_reasoning:
            body["think"] = True
        return body

    def transform_response(self, body: Mapping[str, Any], *, model: str = "") -> Response:
        raw = body.get("message") or {}
        message = Message(
            role=Role.ASSISTANT,
            content=raw.get("content"),
            reasoning_content=raw.get("thinking") or None,
        )
        return Response(
            id=f"ollama-{uuid.uuid4().hex}",
            model=body.get("model") or model,
            choices=(
                Choice(0, message, _finish_reason({**body, "done": True}) or FinishReason.STOP),
            ),
            usage=_usage(body),
        )

    def transform_streaming_chunk(self, frame: Mapping[str, Any]) -> Delta | None:
        raw = frame.get("message") or {}
        finish = _finish_reason(frame)
        delta = Delta(
            content=raw.get("content") or None,
            reasoning_content=raw.get("thinking") or None,
            finish_reason=finish,
            usage=_usage(frame) if finish else None,
        )
        return None if delta.is_empty() else delta

    def is_terminal_frame(self, frame: Mapping[str, Any]) -> bool:
        return bool(frame.get("done"))

    def stream_error(self, frame: Mapping[str, Any]) -> ErrorRecord | None:
        error = frame.get("error")
        if not error:
            return None
        return _errors.classify_body(self.name.value, {"message": str(error)}, streaming=True)

    def classify_error(self, response: HttpResponse) -> ErrorRecord:
        record = _errors.classify_http(self.name.value, response)
        if response.status == 404 or "not found" in record.message.lower():
            return _errors.classify_http(
                self.name.value, response, kind=ErrorKind.MODEL_NOT_FOUND
            )
        return record
