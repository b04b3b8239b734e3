"""Anthropic Messages API adapter."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
import uuid

from switchboard.errors import ErrorKind
from switchboard.models import (
    Choice,
    Delta,
    FinishReason,
    Message,
    NamedToolChoice,
    Response,
    Role,
    ThinkingBlock,
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
    from switchboard.models import Request, ToolChoice, ToolSpec
    from switchboard.transport import HttpResponse

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 4096
_THINKING_BUDGETS = {
    "low": 2048,
    "medium": 4096,
    "high": 6144,
}
_THINKING_MODEL_PREFIXES = (
    "claude-3-7-sonnet",
    "claude-sonnet-4",
    "claude-opus-4",
    "claude-haiku-4",
)

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "pause_turn": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}

ANTHROPIC_COSTS: dict[str, ModelCost] = {
    "claude-3-opus-20240229": ModelCost(1.5e-5, 7.5e-5),
    "claude-3-sonnet-20240229": ModelCost(3e-6, 1.5e-5),
    "claude-3-haiku-20240307": ModelCost(2.5e-7, 1.25e-6),
    "claude-3-5-sonnet": ModelCost(3e-6, 1.5e-5),
    "claude-3-5-haiku": ModelCost(8e-7, 4e-6),
    "claude-3-7-sonnet": ModelCost(3e-6, 1.5e-5),
    "claude-sonnet-4": ModelCost(3e-6, 1.5e-5),
    "claude-opus-4": ModelCost(1.5e-5, 7.5e-5),
    "claude-haiku-4": ModelCost(1e-6, 5e-6),
}

ANTHROPIC_ALIASES: dict[str, str] = {
    "claude-3-opus": "claude-3-opus-20240229",
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-haiku": "claude-3-haiku-20240307",
    "claude-3-5-sonnet": "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku": "claude-3-5-haiku-20241022",
}


def map_stop_reason(raw: Any) -> FinishReason | None:
    if raw is None:
        return None
    return _STOP_REASONS.get(str(raw).lower(), FinishReason.STOP)


def supports_thinking(model: str) -> bool:
    name = model.lower().rsplit("/", 1)[-1]
    # Bedrock ids such as "us.anthropic.claude-sonnet-4-20250514-v1:0".
    name = name.rsplit(".", 1)[-1]
    return name.startswith(_THINKING_MODEL_PREFIXES)


def thinking_budget(request: Request) -> int | None:
    """Token budget for extended thinking, or None when thinking is off."""
    if request.reasoning_effort is not None:
        return _THINKING_BUDGETS[request.reasoning_effort]
    if request.thinking is not None and request.thinking.enabled:
        return request.thinking.budget_tokens or _THINKING_BUDGETS["medium"]
    return None


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic requires strict user/assistant alternation. Consecutive
    same-role messages (several tool results, or a tool result followed by a
    user turn) are merged into a single message's content blocks.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev_content = prev["content"]
        new_content = msg["content"]
        if isinstance(prev_content, str):
            prev_content = [{"type": "text", "text": prev_content}]
        if isinstance(new_content, str):
            new_content = [{"type": "text", "text": new_content}]
        prev["content"] = prev_content + new_content
    else:
        messages.append(msg)


def _thinking_to_wire(block: ThinkingBlock) -> dict[str, Any]:
    if block.kind == "redacted_thinking":
        return {"type": "redacted_thinking", "data": block.text}
    return {"type": "thinking", "thinking": block.text, "signature": block.signature or ""}


def build_messages(messages: Sequence[Message]) -> tuple[str | None, list[dict[str, Any]]]:
    """Split system text out and encode the remaining turns as content blocks."""
    system_parts: list[str] = []
    wire: list[dict[str, Any]] = []
    for item in messages:
        if item.role is Role.SYSTEM:
            if item.content:
                system_parts.append(item.content)
        elif item.role is Role.TOOL:
            _append_message(
                wire,
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": item.tool_call_id,
                            "content": item.content or "",
                        }
                    ],
                },
            )
        elif item.role is Role.ASSISTANT:
            blocks: list[dict[str, Any]] = [
                _thinking_to_wire(b) for b in item.thinking_blocks or ()
            ]
            if item.content:
                blocks.append({"type": "text", "text": item.content})
            blocks.extend(
                {
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": decode_arguments(call.arguments),
                }
                for call in item.tool_calls or ()
            )
            if blocks:
                _append_message(wire, {"role": "assistant", "content": blocks})
        else:
            _append_message(wire, {"role": "user", "content": item.content or ""})
    system = "\n\n".join(system_parts) if system_parts else None
    return system, wire


def normalize_tools(tools: Sequence[ToolSpec]) -> list[dict[str, Any]]:
    """Convert tool specs to Anthropic format (parameters become input_schema)."""
    wire: list[dict[str, Any]] = []
    for tool in tools:
        tool_def: dict[str, Any] = {"name": tool.name, "input_schema": dict(tool.parameters)}
        if tool.description:
            tool_def["description"] = tool.description
        wire.append(tool_def)
    return wire


def map_tool_choice(choice: ToolChoice) -> dict[str, str]:
    if isinstance(choice, NamedToolChoice):
        return {"type": "tool", "name": choice.name}
    if choice == "required":
        return {"type": "any"}
    return {"type": choice}


class AnthropicAdapter(ProviderAdapter):
    name = ProviderName.ANTHROPIC
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, embeddings=False)
    default_base_url = "https://api.anthropic.com"
    cost_table = ANTHROPIC_COSTS
    model_aliases = ANTHROPIC_ALIASES
    default_rate_limits = RateLimits(requests_per_minute=50, tokens_per_minute=40000)

    def supports_reasoning(self, model: str) -> bool:
        return supports_thinking(self.resolve_model(model))

    def chat_url(self, request: Request, config: ProviderConfig) -> str:
        return f"{self.base_url(config)}/v1/messages"

    def models_url(self, config: ProviderConfig) -> str:
        return f"{self.base_url(config)}/v1/models"

    def auth_headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = {"anthropic-version": ANTHROPIC_VERSION}
        if config.api_key:
            headers["x-api-key"] = config.api_key
        return headers

    def transform_request(self, request: Request, config: ProviderConfig) -> dict[str, Any]:
        system, messages = build_messages(request.messages)
        budget = thinking_budget(request)
        max_tokens = request.max_tokens or _DEFAULT_MAX_TOKENS
        if budget is not None and max_tokens <= budget:
            max_tokens = budget + _DEFAULT_MAX_TOKENS

        body: dict[str, Any] = {
            "model": self.resolve_model(request.model),
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if system is not None:
            body["system"] = system
        if budget is not None:
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
            if request.temperature is not None or request.top_p is not None:
                logger.debug("Dropping temperature/top_p: not allowed with extended thinking")
        else:
            if request.temperature is not None:
                body["temperature"] = request.temperature
            if request.top_p is not None:
                body["top_p"] = request.top_p
        if request.stop:
            body["stop_sequences"] = list(request.stop)
        if request.tools:
            body["tools"] = normalize_tools(request.tools)
        if request.tool_choice is not None:
            body["tool_choice"] = map_tool_choice(request.tool_choice)
        if request.stream:
            body["stream"] = True
        return body

    def transform_response(self, body: Mapping[str, Any], *, model: str = "") -> Response:
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        thinking_blocks: list[ThinkingBlock] = []

        for block in body.get("content") or ():
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
            elif block_type == "thinking":
                thinking = block.get("thinking", "")
                if thinking:
                    reasoning_parts.append(thinking)
                thinking_blocks.append(
                    ThinkingBlock("thinking", thinking, block.get("signature"))
                )
            elif block_type == "redacted_thinking":
                thinking_blocks.append(ThinkingBlock("redacted_thinking", block.get("data", "")))
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCall.create(
                        block.get("id") or f"toolu_{uuid.uuid4().hex[:24]}",
                        block.get("name", ""),
                        block.get("input", {}),
                    )
                )

        usage_raw = body.get("usage") or {}
        message = Message(
            role=Role.ASSISTANT,
            content="".join(text_parts) if text_parts else None,
            tool_calls=tuple(tool_calls) or None,
            reasoning_content="\n\n".join(reasoning_parts) if reasoning_parts else None,
            thinking_blocks=tuple(thinking_blocks) or None,
        )
        return Response(
            id=body.get("id", ""),
            model=body.get("model") or model,
            choices=(
                Choice(
                    index=0,
                    message=message,
                    finish_reason=map_stop_reason(body.get("stop_reason")) or FinishReason.STOP,
                ),
            ),
            usage=Usage.of(usage_raw.get("input_tokens"), usage_raw.get("output_tokens")),
        )

    def transform_streaming_chunk(self, frame: Mapping[str, Any]) -> Delta | None:
        event = frame.get("type")
        if event == "content_block_start":
            block = frame.get("content_block") or {}
            if block.get("type") == "tool_use":
                return Delta(
                    role=Role.ASSISTANT,
                    tool_calls=(
                        ToolCallDelta(
                            index=int(frame.get("index", 0)),
                            id=block.get("id"),
                            name=block.get("name"),
                        ),
                    ),
                )
            if block.get("type") == "text" and block.get("text"):
                return Delta(content=block["text"])
            return None
        if event == "content_block_delta":
            delta = frame.get("delta") or {}
            kind = delta.get("type")
            if kind == "text_delta":
                return Delta(content=delta.get("text", "")) if delta.get("text") else None
            if kind == "input_json_delta":
                return Delta(
                    tool_calls=(
                        ToolCallDelta(
                            index=int(frame.get("index", 0)),
                            arguments=delta.get("partial_json", ""),
                        ),
                    )
                )
            if kind == "thinking_delta":
                thinking = delta.get("thinking")
                return Delta(reasoning_content=thinking) if thinking else None
            return None
        if event == "message_delta":
            delta = frame.get("delta") or {}
            finish = map_stop_reason(delta.get("stop_reason"))
            if finish is None:
                return None
            usage_raw = frame.get("usage") or {}
            return Delta(
                finish_reason=finish,
                usage=Usage.of(usage_raw.get("input_tokens"), usage_raw.get("output_tokens")),
            )
        # message_start, content_block_stop, message_stop and ping carry no content.
        return None

    def stream_usage(self, frame: Mapping[str, Any]) -> Usage | None:
        # Input tokens are only counted in message_start.
        if frame.get("type") != "message_start":
            return None
        usage_raw = (frame.get("message") or {}).get("usage") or {}
        return Usage.of(usage_raw.get("input_tokens"), usage_raw.get("output_tokens"))

    def is_terminal_frame(self, frame: Mapping[str, Any]) -> bool:
        return frame.get("type") == "message_stop"

    def stream_error(self, frame: Mapping[str, Any]) -> ErrorRecord | None:
        if frame.get("type") != "error":
            return None
        return _errors.classify_body(self.name.value, frame.get("error") or {}, streaming=True)

    def classify_error(self, response: HttpResponse) -> ErrorRecord:
        if response.status == 529:
            # overloaded_error
            return _errors.classify_http(self.name.value, response, kind=ErrorKind.SERVER)
        record = _errors.classify_http(self.name.value, response)
        if response.status == 400 and "credit balance" in record.message.lower():
            return _errors.classify_http(
                self.name.value, response, kind=ErrorKind.QUOTA_EXCEEDED
            )
        return record
