"""Shared codec for OpenAI-shaped chat completion APIs.

OpenAI, Azure OpenAI, Mistral and OpenRouter all speak the same
``/chat/completions`` dialect with small differences, which subclasses
express through the hooks on :class:`OpenAICompatibleAdapter`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
import uuid

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
)
from switchboard.providers.base import ProviderAdapter

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from switchboard.config import ProviderConfig
    from switchboard.models import EmbeddingRequest, Request, ToolChoice, ToolSpec


_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def map_finish_reason(raw: Any) -> FinishReason | None:
    if raw is None:
        return None
    return _FINISH_REASONS.get(str(raw).lower(), FinishReason.STOP)


def effective_effort(request: Request) -> str | None:
    """Reasoning effort, deriving one from a thinking budget when needed."""
    if request.reasoning_effort is not None:
        return request.reasoning_effort
    thinking = request.thinking
    if thinking is None or not thinking.enabled:
        return None
    budget = thinking.budget_tokens or 0
    if budget and budget <= 2048:
        return "low"
    if budget > 8192:
        return "high"
    return "medium"


def parse_usage(raw: Any) -> Usage:
    if not isinstance(raw, dict):
        return Usage()
    return Usage.of(
        raw.get("prompt_tokens"), raw.get("completion_tokens"), raw.get("total_tokens")
    )


def tools_to_wire(tools: Sequence[ToolSpec]) -> list[dict[str, Any]]:
    wire = []
    for tool in tools:
        fn: dict[str, Any] = {"name": tool.name, "parameters": dict(tool.parameters)}
        if tool.description:
            fn["description"] = tool.description
        wire.append({"type": "function", "function": fn})
    return wire


def tool_choice_to_wire(choice: ToolChoice, *, required: str = "required") -> Any:
    if isinstance(choice, NamedToolChoice):
        return {"type": "function", "function": {"name": choice.name}}
    return required if choice == "required" else choice


def message_to_wire(message: Message) -> dict[str, Any]:
    wire: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.role is Role.TOOL:
        wire["tool_call_id"] = message.tool_call_id
        wire["content"] = message.content or ""
    if message.tool_calls:
        wire["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in message.tool_calls
        ]
    return wire


def parse_tool_calls(raw: Any) -> tuple[ToolCall, ...] | None:
    if not isinstance(raw, list) or not raw:
        return None
    calls = []
    for item in raw:
        fn = item.get("function") or {}
        call_id = item.get("id") or f"call_{uuid.uuid4().hex[:24]}"
        calls.append(ToolCall.create(call_id, fn.get("name", ""), fn.get("arguments")))
    return tuple(calls)


def parse_embeddings(body: Mapping[str, Any], *, model: str = "") -> EmbeddingResponse:
    data = tuple(
        Embedding(index=int(item.get("index", i)), embedding=tuple(item.get("embedding") or ()))
        for i, item in enumerate(body.get("data") or ())
    )
    return EmbeddingResponse(
        model=body.get("model") or model,
        data=tuple(sorted(data, key=lambda e: e.index)),
        usage=parse_usage(body.get("usage")),
    )


class OpenAICompatibleAdapter(ProviderAdapter):
    """Base for adapters speaking the OpenAI chat completions dialect."""

    #: Wire value for a forced tool call.
    required_tool_choice: str = "required"

    def chat_url(self, request: Request, config: ProviderConfig) -> str:
        return f"{self.base_url(config)}/chat/completions"

    # --- Hooks --------------------------------------------------------------

    def _max_tokens_field(self, request: Request) -> str:
        return "max_tokens"

    def _wire_messages(self, request: Request) -> list[dict[str, Any]]:
        return [message_to_wire(m) for m in request.messages]

    def _apply_reasoning(self, body: dict[str, Any], request: Request) -> None:
        effort = effective_effort(request)
        if effort is not None:
            body["reasoning_effort"] = effort

    def _split_content(self, content: Any) -> tuple[str | None, str | None]:
        """Return ``(text, reasoning)`` from a wire content value."""
        return (content if isinstance(content, str) else None), None

    # --- Transforms ---------------------------------------------------------

    def transform_request(self, request: Request, config: ProviderConfig) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.resolve_model(request.model),
            "messages": self._wire_messages(request),
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.max_tokens is not None:
            body[self._max_tokens_field(request)] = request.max_tokens
        if request.stop:
            body["stop"] = list(request.stop)
        if request.tools:
            body["tools"] = tools_to_wire(request.tools)
        if request.tool_choice is not None:
            body["tool_choice"] = tool_choice_to_wire(
                request.tool_choice, required=self.required_tool_choice
            )
        if request.stream:
            body["stream"] = True
        self._apply_reasoning(body, request)
        return body

    def _parse_message(self, raw: Mapping[str, Any]) -> Message:
        text, reasoning = self._split_content(raw.get("content"))
        explicit = raw.get("reasoning_content") or raw.get("reasoning")
        if isinstance(explicit, str) and explicit:
            reasoning = explicit
        return Message(
            role=Role.ASSISTANT,
            content=text,
            tool_calls=parse_tool_calls(raw.get("tool_calls")),
            reasoning_content=reasoning,
        )

    def transform_response(self, body: Mapping[str, Any], *, model: str = "") -> Response:
        choices = tuple(
            Choice(
                index=int(raw.get("index", i)),
                message=self._parse_message(raw.get("message") or {}),
                finish_reason=map_finish_reason(raw.get("finish_reason")) or FinishReason.STOP,
            )
            for i, raw in enumerate(body.get("choices") or ())
        )
        return Response(
            id=body.get("id") or f"chatcmpl-{uuid.uuid4().hex}",
            model=body.get("model") or model,
            choices=choices,
            usage=parse_usage(body.get("usage")),
        )

    def transform_streaming_chunk(self, frame: Mapping[str, Any]) -> Delta | None:
        choices = frame.get("choices")
        if not choices:
            return None
        choice = choices[0]
        raw = choice.get("delta") or {}
        text, reasoning = self._split_content(raw.get("content"))
        explicit = raw.get("reasoning_content") or raw.get("reasoning")
        if isinstance(explicit, str) and explicit:
            reasoning = explicit
        tool_calls = None
        if raw.get("tool_calls"):
            tool_calls = tuple(
                ToolCallDelta(
                    index=int(item.get("index", i)),
                    id=item.get("id"),
                    name=(item.get("function") or {}).get("name"),
                    arguments=(item.get("function") or {}).get("arguments") or "",
                )
                for i, item in enumerate(raw["tool_calls"])
            )
        finish = map_finish_reason(choice.get("finish_reason"))
        delta = Delta(
            index=int(choice.get("index", 0)),
            role=Role.ASSISTANT if raw.get("role") else None,
            content=text or None,
            reasoning_content=reasoning or None,
            tool_calls=tool_calls,
            finish_reason=finish,
            usage=parse_usage(frame["usage"]) if finish and frame.get("usage") else None,
        )
        return None if delta.is_empty() else delta

    # --- Embeddings ---------------------------------------------------------

    def embeddings_url(self, request: EmbeddingRequest, config: ProviderConfig) -> str:
        return f"{self.base_url(config)}/embeddings"

    def transform_embedding_request(
        self, request: EmbeddingRequest, config: ProviderConfig
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "input": list(request.input),
            "encoding_format": "float",
        }
        if request.dimensions is not None:
            body["dimensions"] = request.dimensions
        return body

    def transform_embedding_response(
        self, body: Mapping[str, Any], *, model: str = ""
    ) -> EmbeddingResponse:
        return parse_embeddings(body, model=model)
