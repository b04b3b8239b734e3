"""Amazon Bedrock Converse API adapter.

Requests use the model-agnostic Converse schema. Streaming responses arrive in
AWS event-stream framing; the streaming engine decodes each message into a
``{event_type: payload}`` frame before it reaches this adapter. Requests are
authorized with a Bedrock API key or signed with AWS Signature Version 4.
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
import hashlib
import hmac
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, quote, urlsplit
import uuid

from switchboard.errors import ErrorKind, ErrorRecord
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
from switchboard.providers.anthropic import supports_thinking, thinking_budget
from switchboard.providers.base import (
    ModelCost,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderName,
    RateLimits,
)
from switchboard.transport import HttpRequest

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from switchboard.config import ProviderConfig
    from switchboard.models import Request
    from switchboard.transport import HttpResponse

DEFAULT_REGION = "us-east-1"
_SERVICE = "bedrock"
_DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_use": FinishReason.TOOL_CALLS,
    "max_tokens": FinishReason.LENGTH,
    "content_filtered": FinishReason.CONTENT_FILTER,
    "guardrail_intervened": FinishReason.CONTENT_FILTER,
}

_ERROR_TYPES: dict[str, ErrorKind] = {
    "ThrottlingException": ErrorKind.RATE_LIMIT,
    "ServiceQuotaExceededException": ErrorKind.QUOTA_EXCEEDED,
    "AccessDeniedException": ErrorKind.AUTHORIZATION,
    "UnrecognizedClientException": ErrorKind.AUTHENTICATION,
    "InvalidSignatureException": ErrorKind.AUTHENTICATION,
    "ExpiredTokenException": ErrorKind.AUTHENTICATION,
    "ValidationException": ErrorKind.INVALID_REQUEST,
    "ResourceNotFoundException": ErrorKind.MODEL_NOT_FOUND,
    "ModelTimeoutException": ErrorKind.TIMEOUT,
    "ServiceUnavailableException": ErrorKind.SERVER,
    "InternalServerException": ErrorKind.SERVER,
    "ModelNotReadyException": ErrorKind.SERVER,
    "ModelErrorException": ErrorKind.PROVIDER,
    "ModelStreamErrorException": ErrorKind.STREAMING,
}

BEDROCK_COSTS: dict[str, ModelCost] = {
    "anthropic.claude-3-5-sonnet-20241022-v2:0": ModelCost(3e-6, 1.5e-5),
    "anthropic.claude-3-5-sonnet-20240620-v1:0": ModelCost(3e-6, 1.5e-5),
    "anthropic.claude-3-5-haiku-20241022-v1:0": ModelCost(8e-7, 4e-6),
    "anthropic.claude-3-opus-20240229-v1:0": ModelCost(1.5e-5, 7.5e-5),
    "anthropic.claude-3-sonnet-20240229-v1:0": ModelCost(3e-6, 1.5e-5),
    "anthropic.claude-3-haiku-20240307-v1:0": ModelCost(2.5e-7, 1.25e-6),
    "amazon.nova-pro-v1:0": ModelCost(8e-7, 3.2e-6),
    "amazon.nova-lite-v1:0": ModelCost(6e-8, 2.4e-7),
    "amazon.nova-micro-v1:0": ModelCost(3.5e-8, 1.4e-7),
    "meta.llama3-1-70b-instruct-v1:0": ModelCost(9.9e-7, 9.9e-7),
    "meta.llama3-1-8b-instruct-v1:0": ModelCost(2.2e-7, 2.2e-7),
    "meta.llama3-2-90b-instruct-v1:0": ModelCost(2e-6, 2e-6),
    "meta.llama3-2-11b-instruct-v1:0": ModelCost(1.6e-7, 1.6e-7),
    "mistral.mistral-large-2407-v1:0": ModelCost(2e-6, 6e-6),
    "mistral.mistral-small-2402-v1:0": ModelCost(1e-7, 3e-7),
}

BEDROCK_ALIASES: dict[str, str] = {
    "claude-3-5-sonnet": "anthropic.claude-3-5-sonnet-20241022-v2:0",
    "claude-3-5-haiku": "anthropic.claude-3-5-haiku-20241022-v1:0",
    "claude-3-opus": "anthropic.claude-3-opus-20240229-v1:0",
    "claude-3-sonnet": "anthropic.claude-3-sonnet-20240229-v1:0",
    "claude-3-haiku": "anthropic.claude-3-haiku-20240307-v1:0",
    "nova-pro": "amazon.nova-pro-v1:0",
    "nova-lite": "amazon.nova-lite-v1:0",
    "nova-micro": "amazon.nova-micro-v1:0",
    "llama-3-1-70b": "meta.llama3-1-70b-instruct-v1:0",
    "llama-3-1-8b": "meta.llama3-1-8b-instruct-v1:0",
    "llama-3-2-90b": "meta.llama3-2-90b-instruct-v1:0",
    "mistral-large": "mistral.mistral-large-2407-v1:0",
    "mistral-small": "mistral.mistral-small-2402-v1:0",
}


def map_stop_reason(raw: Any) -> FinishReason | None:
    if raw is None:
        return None
    return _STOP_REASONS.get(str(raw).lower(), FinishReason.STOP)


# --- SigV4 ------------------------------------------------------------------


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def _canonical_query(query: str) -> str:
    pairs = sorted(parse_qsl(query, keep_blank_values=True))
    return "&".join(f"{quote(k, safe='-_.~')}={quote(v, safe='-_.~')}" for k, v in pairs)


def sign_v4(
    request: HttpRequest,
    *,
    access_key: str,
    secret_key: str,
    region: str,
    session_token: str | None = None,
    service: str = _SERVICE,
    now: datetime | None = None,
) -> HttpRequest:
    """Return *request* with AWS Signature Version 4 headers added."""
    now = now or datetime.now(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    datestamp = now.strftime("%Y%m%d")
    parts = urlsplit(request.url)
    payload_hash = hashlib.sha256(request.content() or b"").hexdigest()

    headers = dict(request.headers)
    headers["host"] = parts.netloc
    headers["x-amz-date"] = amz_date
    headers["x-amz-content-sha256"] = payload_hash
    if session_token:
        headers["x-amz-security-token"] = session_token

    signed = {k.lower(): " ".join(str(v).split()) for k, v in headers.items()}
    signed_names = ";".join(sorted(signed))
    canonical_headers = "".join(f"{k}:{signed[k]}\n" for k in sorted(signed))
    # Non-S3 services sign each path segment encoded twice.
    canonical_uri = quote(parts.path or "/", safe="/-_.~")
    canonical_request = "\n".join(
        [
            request.method.upper(),
            canonical_uri,
            _canonical_query(parts.query),
            canonical_headers,
            signed_names,
            payload_hash,
        ]
    )
    scope = f"{datestamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join(
        [
            "AWS4-HMAC-SHA256",
            amz_date,
            scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )
    key = _hmac(f"AWS4{secret_key}".encode(), datestamp)
    for part in (region, service, "aws4_request"):
        key = _hmac(key, part)
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
    headers["Authorization"] = (
        f"AWS4-HMAC-SHA256 Credential={access_key}/{scope}, "
        f"SignedHeaders={signed_names}, Signature={signature}"
    )
    return HttpRequest(
        method=request.method, url=request.url, headers=headers, body=request.body
    )


# --- Converse codec ---------------------------------------------------------


def _tool_result_content(content: str | None) -> list[dict[str, Any]]:
    value = decode_arguments(content) if content else None
    if isinstance(value, dict) and value:
        return [{"json": value}]
    return [{"text": content or ""}]


def _thinking_to_wire(block: ThinkingBlock) -> dict[str, Any]:
    if block.kind == "redacted_thinking":
        return {"reasoningContent": {"redactedContent": block.text}}
    text: dict[str, Any] = {"text": block.text}
    if block.signature:
        text["signature"] = block.signature
    return {"reasoningContent": {"reasoningText": text}}


def build_messages(
    messages: Sequence[Message],
) -> tuple[list[dict[str, str]], list[dict[str, Any]]]:
    """Return ``(system_blocks, messages)`` with same-role turns merged."""
    system: list[dict[str, str]] = []
    wire: list[dict[str, Any]] = []

    def append(role: str, content: list[dict[str, Any]]) -> None:
        if not content:
            return
        if wire and wire[-1]["role"] == role:
            wire[-1]["content"].extend(content)
        else:
            wire.append({"role": role, "content": content})

    for item in messages:
        if item.role is Role.SYSTEM:
            if item.content:
                system.append({"text": item.content})
        elif item.role is Role.TOOL:
            append(
                "user",
                [
                    {
                        "toolResult": {
                            "toolUseId": item.tool_call_id,
                            "content": _tool_result_content(item.content),
                        }
                    }
                ],
            )
        elif item.role is Role.ASSISTANT:
            blocks: list[dict[str, Any]] = [
                _thinking_to_wire(b) for b in item.thinking_blocks or ()
            ]
            if item.content:
                blocks.append({"text": item.content})
            blocks.extend(
                {
                    "toolUse": {
                        "toolUseId": call.id,
                        "name": call.name,
                        "input": decode_arguments(call.arguments),
                    }
                }
                for call in item.tool_calls or ()
            )
            append("assistant", blocks)
        else:
            append("user", [{"text": item.content or ""}])
    return system, wire


def _tool_config(request: Request) -> dict[str, Any] | None:
    has_history = any(m.tool_calls or m.role is Role.TOOL for m in request.messages)
    if not request.tools or (request.tool_choice == "none" and not has_history):
        return None
    config: dict[str, Any] = {
        "tools": [
            {
                "toolSpec": {
                    "name": tool.name,
                    "description": tool.description or tool.name,
                    "inputSchema": {"json": dict(tool.parameters)},
                }
            }
            for tool in request.tools
        ]
    }
    choice = request.tool_choice
    if isinstance(choice, NamedToolChoice):
        config["toolChoice"] = {"tool": {"name": choice.name}}
    elif choice == "required":
        config["toolChoice"] = {"any": {}}
    elif choice == "auto":
        config["toolChoice"] = {"auto": {}}
    return config


class BedrockAdapter(ProviderAdapter):
    name = ProviderName.BEDROCK
    capabilities = ProviderCapabilities(
        streaming=True,
        function_calling=True,
        embeddings=False,
        stream_framing="aws-eventstream",
    )
    cost_table = BEDROCK_COSTS
    model_aliases = BEDROCK_ALIASES
    default_rate_limits = RateLimits(requests_per_minute=200, tokens_per_minute=200000)

    def supports_reasoning(self, model: str) -> bool:
        return supports_thinking(self.resolve_model(model))

    def base_url(self, config: ProviderConfig) -> str:
        region = config.region or DEFAULT_REGION
        return (config.base_url or f"https://bedrock-runtime.{region}.amazonaws.com").rstrip("/")

    def chat_url(self, request: Request, config: ProviderConfig) -> str:
        model_id = quote(self.resolve_model(request.model), safe="")
        action = "converse-stream" if request.stream else "converse"
        return f"{self.base_url(config)}/model/{model_id}/{action}"

    def models_url(self, config: ProviderConfig) -> str:
        region = config.region or DEFAULT_REGION
        return f"https://bedrock.{region}.amazonaws.com/foundation-models"

    def _headers(self, config: ProviderConfig, *, stream: bool = False) -> dict[str, str]:
        headers = super()._headers(config, stream=stream)
        if stream:
            headers["Accept"] = "application/vnd.amazon.eventstream"
        return headers

    def sign(self, request: HttpRequest, config: ProviderConfig) -> HttpRequest:
        # API keys travel as a bearer token from auth_headers.
        if config.api_key:
            return request
        return sign_v4(
            request,
            access_key=config.aws_access_key_id or "",
            secret_key=config.aws_secret_access_key or "",
            region=config.region or DEFAULT_REGION,
            session_token=config.aws_session_token,
        )

    def transform_request(self, request: Request, config: ProviderConfig) -> dict[str, Any]:
        system, messages = build_messages(request.messages)
        body: dict[str, Any] = {"messages": messages}
        if system:
            body["system"] = system

        budget = thinking_budget(request)
        inference: dict[str, Any] = {}
        if request.max_tokens is not None:
            inference["maxTokens"] = request.max_tokens
        if budget is not None:
            body["additionalModelRequestFields"] = {
                "thinking": {"type": "enabled", "budget_tokens": budget}
            }
            max_tokens = inference.get("maxTokens", _DEFAULT_MAX_TOKENS)
            inference["maxTokens"] = max_tokens if max_tokens > budget else budget + _DEFAULT_MAX_TOKENS
        else:
            if request.temperature is not None:
                inference["temperature"] = request.temperature
            if request.top_p is not None:
                inference["topP"] = request.top_p
        if request.stop:
            inference["stopSequences"] = list(request.stop)
        if inference:
            body["inferenceConfig"] = inference

        tool_config = _tool_config(request)
        if tool_config is not None:
            body["toolConfig"] = tool_config
        return body

    def transform_response(self, body: Mapping[str, Any], *, model: str = "") -> Response:
        message_raw = (body.get("output") or {}).get("message") or {}
        text: list[str] = []
        reasoning: list[str] = []
        calls: list[ToolCall] = []
        blocks: list[ThinkingBlock] = []
        for block in message_raw.get("content") or ():
            if "text" in block:
                text.append(block["text"])
            elif "toolUse" in block:
                tool = block["toolUse"]
                calls.append(
                    ToolCall.create(
                        tool.get("toolUseId") or f"tooluse_{uuid.uuid4().hex[:22]}",
                        tool.get("name", ""),
                        tool.get("input", {}),
                    )
                )
            elif "reasoningContent" in block:
                content = block["reasoningContent"]
                if "reasoningText" in content:
                    rt = content["reasoningText"]
                    reasoning.append(rt.get("text", ""))
                    blocks.append(ThinkingBlock("thinking", rt.get("text", ""), rt.get("signature")))
                elif "redactedContent" in content:
                    redacted = content["redactedContent"]
                    if isinstance(redacted, bytes):
                        redacted = base64.b64encode(redacted).decode("ascii")
                    blocks.append(ThinkingBlock("redacted_thinking", str(redacted)))

        usage = body.get("usage") or {}
        message = Message(
            role=Role.ASSISTANT,
            content="".join(text) if text else None,
            tool_calls=tuple(calls) or None,
            reasoning_content="".join(reasoning) or None,
            thinking_blocks=tuple(blocks) or None,
        )
        return Response(
            id=body.get("id") or f"bedrock-{uuid.uuid4().hex}",
            model=model,
            choices=(
                Choice(
                    index=0,
                    message=message,
                    finish_reason=map_stop_reason(body.get("stopReason")) or FinishReason.STOP,
                ),
            ),
            usage=Usage.of(usage.get("inputTokens"), usage.get("outputTokens"), usage.get("totalTokens")),
        )

    def transform_streaming_chunk(self, frame: Mapping[str, Any]) -> Delta | None:
        if "contentBlockStart" in frame:
            event = frame["contentBlockStart"]
            tool = (event.get("start") or {}).get("toolUse")
            if tool is None:
                return None
            return Delta(
                role=Role.ASSISTANT,
                tool_calls=(
                    ToolCallDelta(
                        index=int(event.get("contentBlockIndex", 0)),
                        id=tool.get("toolUseId"),
                        name=tool.get("name"),
                    ),
                ),
            )
        if "contentBlockDelta" in frame:
            event = frame["contentBlockDelta"]
            delta = event.get("delta") or {}
            if delta.get("text"):
                return Delta(content=delta["text"])
            if "toolUse" in delta:
                return Delta(
                    tool_calls=(
                        ToolCallDelta(
                            index=int(event.get("contentBlockIndex", 0)),
                            arguments=delta["toolUse"].get("input", ""),
                        ),
                    )
                )
            reasoning = (delta.get("reasoningContent") or {}).get("text")
            return Delta(reasoning_content=reasoning) if reasoning else None
        if "messageStop" in frame:
            finish = map_stop_reason(frame["messageStop"].get("stopReason"))
            return Delta(finish_reason=finish or FinishReason.STOP)
        # messageStart, contentBlockStop and metadata carry no content.
        return None

    def is_terminal_frame(self, frame: Mapping[str, Any]) -> bool:
        return "messageStop" in frame

    def stream_error(self, frame: Mapping[str, Any]) -> ErrorRecord | None:
        for key, payload in frame.items():
            if not key.endswith("Exception"):
                continue
            exc_type = key[0].upper() + key[1:]
            message = (payload or {}).get("message") or exc_type
            kind = _ERROR_TYPES.get(exc_type, ErrorKind.STREAMING)
            recoverable = None
            if kind is ErrorKind.STREAMING:
                recoverable = False
            return ErrorRecord.create(
                kind,
                message,
                provider=self.name.value,
                provider_code=exc_type,
                recoverable=recoverable,
            )
        return super().stream_error(frame)

    def classify_error(self, response: HttpResponse) -> ErrorRecord:
        raw_type = response.header("x-amzn-ErrorType")
        if not raw_type:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raw_type = body.get("__type", "") if isinstance(body, dict) else ""
        # "ThrottlingException:http://internal.amazon.com/coral/..." or "ns#Type".
        exc_type = raw_type.split(":", 1)[0].rsplit("#", 1)[-1]
        kind = _ERROR_TYPES.get(exc_type)
        return _errors.classify_http(
            self.name.value, response, kind=kind, provider_code=exc_type or None
        )
