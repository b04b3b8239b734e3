"""Google Gemini (Generative Language REST API) adapter.

Gemini names the assistant role ``model``, carries system text in
``system_instruction`` and returns tool calls as ``functionCall`` parts whose
arguments are native JSON objects. Tool results must name the function they
answer, so the adapter recovers names from earlier assistant turns.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote
import uuid

from switchboard.errors import ErrorKind
from switchboard.models import (
    Choice,
    Delta,
    Embedding,
    EmbeddingResponse,
    FinishReason,
    Message,
    NamedToolChoice,
    Response,
    Role,
    ToolCall,
    ToolCallDelta,
    Usage,
    decode_arguments,
)
from switchboard.providers import _errors
from switchboard.providers.base import (
    ModelCost,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderName,
    RateLimits,
)

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from switchboard.config import ProviderConfig
    from switchboard.errors import ErrorRecord
    from switchboard.models import EmbeddingRequest, Request
    from switchboard.transport import HttpResponse

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
    "IMAGE_SAFETY": FinishReason.CONTENT_FILTER,
}

_THINKING_BUDGETS = {"low": 1024, "medium": 8192, "high": 24576}

GEMINI_COSTS: dict[str, ModelCost] = {
    "gemini-1.5-pro": ModelCost(1.25e-6, 5e-6),
    "gemini-1.5-flash": ModelCost(7.5e-8, 3e-7),
    "gemini-2.0-flash": ModelCost(1e-7, 4e-7),
    "gemini-2.0-flash-lite": ModelCost(7.5e-8, 3e-7),
    "gemini-2.5-pro": ModelCost(1.25e-6, 1e-5),
    "gemini-2.5-flash": ModelCost(3e-7, 2.5e-6),
    "gemini-2.5-flash-lite": ModelCost(1e-7, 4e-7),
    "text-embedding-004": ModelCost(0.0, 0.0),
}


def map_finish_reason(raw: Any, *, has_tool_calls: bool = False) -> FinishReason | None:
    if raw is None:
        return None
    reason = _FINISH_REASONS.get(str(raw).upper(), FinishReason.STOP)
    if reason is FinishReason.STOP and has_tool_calls:
        return FinishReason.TOOL_CALLS
    return reason


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _tool_response_payload(content: str | None) -> dict[str, Any]:
    value = decode_arguments(content) if content else {}
    if isinstance(value, dict) and value:
        return value
    return {"content": content or ""}


def build_contents(
    messages: Sequence[Message],
) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
    """Return ``(system_instruction, contents)`` with same-role turns merged."""
    system_parts: list[dict[str, str]] = []
    contents: list[dict[str, Any]] = []
    call_names: dict[str, str] = {}

    def append(role: str, parts: list[dict[str, Any]]) -> None:
        if not parts:
            return
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})

    for item in messages:
        if item.role is Role.SYSTEM:
            if item.content:
                system_parts.append({"text": item.content})
        elif item.role is Role.ASSISTANT:
            parts: list[dict[str, Any]] = []
            if item.content:
                parts.append({"text": item.content})
            for call in item.tool_calls or ():
                call_names[call.id] = call.name
                parts.append(
                    {"functionCall": {"name": call.name, "args": decode_arguments(call.arguments)}}
                )
            append("model", parts)
        elif item.role is Role.TOOL:
            name = call_names.get(item.tool_call_id or "", item.tool_call_id or "")
            append(
                "user",
                [
                    {
                        "functionResponse": {
                            "name": name,
                            "response": _tool_response_payload(item.content),
                        }
                    }
                ],
            )
        else:
            append("user", [{"text": item.content or ""}])

    system = {"parts": system_parts} if system_parts else None
    return system, contents


def _tool_config(request: Request) -> dict[str, Any] | None:
    choice = request.tool_choice
    if choice is None:
        return None
    if isinstance(choice, NamedToolChoice):
        config: dict[str, Any] = {"mode": "ANY", "allowedFunctionNames": [choice.name]}
    else:
        config = {"mode": {"auto": "AUTO", "none": "NONE", "required": "ANY"}[choice]}
    return {"functionCallingConfig": config}


class GeminiAdapter(ProviderAdapter):
    name = ProviderName.GEMINI
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, embeddings=True)
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    cost_table = GEMINI_COSTS
    default_rate_limits = RateLimits(requests_per_minute=60, tokens_per_minute=1000000)

    def supports_reasoning(self, model: str) -> bool:
        model = model.removeprefix("models/")
        return model.startswith(("gemini-2.5", "gemini-3"))

    def auth_headers(self, config: ProviderConfig) -> dict[str, str]:
        return {"x-goog-api-key": config.api_key} if config.api_key else {}

    def _model_path(self, config: ProviderConfig, model: str) -> str:
        model = model.removeprefix("models/")
        return f"{self.base_url(config)}/models/{quote(model, safe='.-_')}"

    def chat_url(self, request: Request, config: ProviderConfig) -> str:
        base = self._model_path(config, request.model)
        if request.stream:
            return f"{base}:streamGenerateContent?alt=sse"
        return f"{base}:generateContent"

    def transform_request(self, request: Request, config: ProviderConfig) -> dict[str, Any]:
        system, contents = build_contents(request.messages)
        body: dict[str, Any] = {"contents": contents}
        if system is not None:
            body["system_instruction"] = system

        generation: dict[str, Any] = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.top_p is not None:
            generation["topP"] = request.top_p
        if request.max_tokens is not None:
            generation["maxOutputTokens"] = request.max_tokens
        if request.stop:
            generation["stopSequences"] = list(request.stop)
        budget = None
        if request.reasoning_effort is not None:
            budget = _THINKING_BUDGETS[request.reasoning_effort]
        elif request.thinking is not None:
            budget = request.thinking.budget_tokens if request.thinking.enabled else 0
            if request.thinking.enabled and budget is None:
                budget = -1  # dynamic
        if budget is not None:
            generation["thinkingConfig"] = {
                "thinkingBudget": budget,
                "includeThoughts": budget != 0,
            }
        if generation:
            body["generationConfig"] = generation

        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description or "",
                            "parameters": dict(tool.parameters),
                        }
                        for tool in request.tools
                    ]
                }
            ]
        tool_config = _tool_config(request)
        if tool_config is not None:
            body["toolConfig"] = tool_config
        return body

    @staticmethod
    def _parse_parts(parts: Sequence[Mapping[str, Any]]) -> tuple[str, str, list[ToolCall]]:
        text: list[str] = []
        thoughts: list[str] = []
        calls: list[ToolCall] = []
        for part in parts:
            if "functionCall" in part:
                fn = part["functionCall"]
                calls.append(
                    ToolCall.create(fn.get("id") or _new_call_id(), fn.get("name", ""), fn.get("args", {}))
                )
            elif "text" in part:
                (thoughts if part.get("thought") else text).append(part["text"])
        return "".join(text), "".join(thoughts), calls

    @staticmethod
    def _usage(body: Mapping[str, Any]) -> Usage:
        raw = body.get("usageMetadata") or body.get("usage_metadata") or {}
        return Usage.of(
            raw.get("promptTokenCount", raw.get("prompt_token_count")),
            raw.get("candidatesTokenCount", raw.get("candidates_token_count")),
            raw.get("totalTokenCount", raw.get("total_token_count")),
        )

    def transform_response(self, body: Mapping[str, Any], *, model: str = "") -> Response:
        choices: list[Choice] = []
        for i, candidate in enumerate(body.get("candidates") or ()):
            parts = (candidate.get("content") or {}).get("parts") or ()
            text, thoughts, calls = self._parse_parts(parts)
            message = Message(
                role=Role.ASSISTANT,
                content=text or None,
                tool_calls=tuple(calls) or None,
                reasoning_content=thoughts or None,
            )
            finish = map_finish_reason(candidate.get("finishReason"), has_tool_calls=bool(calls))
            choices.append(
                Choice(
                    index=int(candidate.get("index", i)),
                    message=message,
                    finish_reason=finish or FinishReason.STOP,
                )
            )
        if not choices and (body.get("promptFeedback") or {}).get("blockReason"):
            choices.append(
                Choice(0, Message(role=Role.ASSISTANT), FinishReason.CONTENT_FILTER)
            )
        return Response(
            id=body.get("responseId") or f"gemini-{uuid.uuid4().hex}",
            model=body.get("modelVersion") or model,
            choices=tuple(choices),
            usage=self._usage(body),
        )

    def transform_streaming_chunk(self, frame: Mapping[str, Any]) -> Delta | None:
        candidates = frame.get("candidates")
        if not candidates:
            return None
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or ()
        text, thoughts, calls = self._parse_parts(parts)
        finish = map_finish_reason(candidate.get("finishReason"), has_tool_calls=bool(calls))
        delta = Delta(
            index=int(candidate.get("index", 0)),
            content=text or None,
            reasoning_content=thoughts or None,
            tool_calls=tuple(
                ToolCallDelta(index=i, id=call.id, name=call.name, arguments=call.arguments)
                for i, call in enumerate(calls)
            )
            or None,
            finish_reason=finish,
            usage=self._usage(frame) if finish and frame.get("usageMetadata") else None,
        )
        return None if delta.is_empty() else delta

    def classify_error(self, response: HttpResponse) -> ErrorRecord:
        record = _errors.classify_http(self.name.value, response)
        # Invalid keys come back as 400 INVALID_ARGUMENT.
        if response.status == 400 and "api key" in record.message.lower():
            return _errors.classify_http(
                self.name.value, response, kind=ErrorKind.AUTHENTICATION
            )
        # Per-minute quota hits mention "quota" but carry RetryInfo; only a 429
        # without a retry hint is a hard quota.
        if response.status == 429 and record.retry_after is not None:
            return _errors.classify_http(self.name.value, response, kind=ErrorKind.RATE_LIMIT)
        return record

    # --- Embeddings ---------------------------------------------------------

    def embeddings_url(self, request: EmbeddingRequest, config: ProviderConfig) -> str:
        return f"{self._model_path(config, request.model)}:batchEmbedContents"

    def transform_embedding_request(
        self, request: EmbeddingRequest, config: ProviderConfig
    ) -> dict[str, Any]:
        model = f"models/{request.model.removeprefix('models/')}"
        requests = []
        for text in request.input:
            item: dict[str, Any] = {"model": model, "content": {"parts": [{"text": text}]}}
            if request.dimensions is not None:
                item["outputDimensionality"] = request.dimensions
            requests.append(item)
        return {"requests": requests}

    def transform_embedding_response(
        self, body: Mapping[str, Any], *, model: str = ""
    ) -> EmbeddingResponse:
        data = tuple(
            Embedding(index=i, embedding=tuple(item.get("values") or ()))
            for i, item in enumerate(body.get("embeddings") or ())
        )
        return EmbeddingResponse(model=model, data=data, usage=Usage())
