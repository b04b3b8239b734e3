"""Canonical, provider-agnostic data model.

Every adapter translates to and from these shapes. Values are immutable once
constructed and are validated at construction time, so transformation code
never has to re-check field presence.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
import json
import logging
from typing import Any, Literal, Union

from switchboard.errors import ErrorKind, ErrorRecord, InvalidRequestError

logger = logging.getLogger(__name__)

ReasoningEffort = Literal["low", "medium", "high"]
_REASONING_EFFORTS = frozenset({"low", "medium", "high"})
_TOOL_CHOICE_MODES = frozenset({"auto", "none", "required"})


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"


def encode_arguments(value: Any) -> str:
    """Return tool-call arguments as a JSON-encoded string.

    Native values are serialized compactly. Strings that already hold valid
    JSON pass through untouched; any other string is wrapped as a JSON string
    literal so the result is always syntactically valid JSON.
    """
    if value is None:
        return "{}"
    if isinstance(value, str):
        if not value.strip():
            return "{}"
        try:
            json.loads(value)
        except ValueError:
            logger.warning("Tool-call arguments are not valid JSON; encoding as string")
            return json.dumps(value, ensure_ascii=False)
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def decode_arguments(arguments: str) -> Any:
    """Parse JSON-encoded arguments into a native value for providers that want objects."""
    try:
        return json.loads(arguments) if arguments else {}
    except ValueError:
        return {}


def _invalid(message: str) -> InvalidRequestError:
    return InvalidRequestError(
        message, record=ErrorRecord.create(ErrorKind.INVALID_REQUEST, message)
    )


# --- Messages ---------------------------------------------------------------


@dataclass(frozen=True)
class FunctionCall:
    name: str
    arguments: str = "{}"

    def __post_init__(self) -> None:
        object.__setattr__(self, "arguments", encode_arguments(self.arguments))


@dataclass(frozen=True)
class ToolCall:
    """A model-requested invocation of a caller-supplied function."""

    id: str
    function: FunctionCall
    type: Literal["function"] = "function"

    @classmethod
    def create(cls, id: str, name: str, arguments: Any) -> ToolCall:  # noqa: A002
        return cls(id=id, function=FunctionCall(name=name, arguments=encode_arguments(arguments)))

    @property
    def name(self) -> str:
        return self.function.name

    @property
    def arguments(self) -> str:
        return self.function.arguments


@dataclass(frozen=True)
class ThinkingBlock:
    """Opaque provider reasoning block, replayed verbatim in later turns.

    ``kind`` is ``"thinking"`` (text plus signature) or ``"redacted_thinking"``
    (encrypted payload stored in ``text``).
    """

    kind: str = "thinking"
    text: str = ""
    signature: str | None = None


@dataclass(frozen=True)
class Message:
    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None
    reasoning_content: str | None = None
    thinking_blocks: tuple[ThinkingBlock, ...] | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "role", Role(self.role))
        except ValueError:
            raise _invalid(f"Unknown message role: {self.role!r}") from None
        if self.tool_calls is not None:
            calls = tuple(self.tool_calls)
            ids = [c.id for c in calls]
            if len(set(ids)) != len(ids):
                raise _invalid("Tool-call ids must be unique within a message")
            object.__setattr__(self, "tool_calls", calls or None)
        if self.thinking_blocks is not None:
            object.__setattr__(
                self, "thinking_blocks", tuple(self.thinking_blocks) or None
            )
        if self.role is Role.TOOL and not self.tool_call_id:
            raise _invalid("Tool messages require a tool_call_id")
        if self.role is not Role.TOOL and self.tool_call_id is not None:
            raise _invalid("tool_call_id is only valid on tool messages")
        if self.tool_calls and self.role is not Role.ASSISTANT:
            raise _invalid("Only assistant messages may carry tool_calls")

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str | None = None, *, tool_calls: Sequence[ToolCall] | None = None
    ) -> Message:
        return cls(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        """Parse a loosely-typed message mapping (OpenAI-shaped)."""
        if not isinstance(data, Mapping):
            raise _invalid(f"Message must be a mapping, got {type(data).__name__}")
        tool_calls = None
        raw_calls = data.get("tool_calls")
        if raw_calls:
            tool_calls = tuple(_tool_call_from_dict(c) for c in raw_calls)
        blocks = None
        raw_blocks = data.get("thinking_blocks")
        if raw_blocks:
            blocks = tuple(
                ThinkingBlock(
                    kind=b.get("kind", b.get("type", "thinking")),
                    text=b.get("text", b.get("thinking", b.get("data", ""))),
                    signature=b.get("signature"),
                )
                for b in raw_blocks
            )
        content = data.get("content")
        if content is not None and not isinstance(content, str):
            raise _invalid("Message content must be text")
        return cls(
            role=data.get("role"),  # type: ignore[arg-type]
            content=content,
            tool_calls=tool_calls,
            tool_call_id=data.get("tool_call_id"),
            reasoning_content=data.get("reasoning_content"),
            thinking_blocks=blocks,
        )


def _tool_call_from_dict(data: Mapping[str, Any]) -> ToolCall:
    fn = data.get("function") or {}
    name = fn.get("name") or data.get("name")
    call_id = data.get("id")
    if not name or not call_id:
        raise _invalid("Tool calls require an id and a function name")
    return ToolCall.create(call_id, name, fn.get("arguments", data.get("arguments")))


# --- Requests ---------------------------------------------------------------


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str | None = None
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def __post_init__(self) -> None:
        if not self.name:
            raise _invalid("Tool name must be non-empty")


@dataclass(frozen=True)
class NamedToolChoice:
    """Force the model to call one specific tool."""

    name: str


ToolChoice = Union[str, NamedToolChoice]


@dataclass(frozen=True)
class ThinkingConfig:
    enabled: bool = True
    budget_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.budget_tokens is not None and self.budget_tokens <= 0:
            raise _invalid("thinking.budget_tokens must be > 0")


@dataclass(frozen=True)
class Request:
    """Canonical chat request, consumed exactly once by one adapter call."""

    model: str
    messages: tuple[Message, ...]
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] | None = None
    tools: tuple[ToolSpec, ...] | None = None
    tool_choice: ToolChoice | None = None
    stream: bool = False
    reasoning_effort: ReasoningEffort | None = None
    thinking: ThinkingConfig | None = None

    def __post_init__(self) -> None:
        if not self.model or not self.model.strip():
            raise _invalid("Request.model must be non-empty")
        messages = tuple(self.messages)
        if not messages:
            raise _invalid("Request.messages must contain at least one message")
        object.__setattr__(self, "messages", messages)
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise _invalid(f"temperature must be within [0, 2], got {self.temperature}")
        if self.top_p is not None and not 0.0 <= self.top_p <= 1.0:
            raise _invalid(f"top_p must be within [0, 1], got {self.top_p}")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise _invalid(f"max_tokens must be > 0, got {self.max_tokens}")
        if self.stop is not None:
            stop = (self.stop,) if isinstance(self.stop, str) else tuple(self.stop)
            object.__setattr__(self, "stop", stop or None)
        if self.tools is not None:
            object.__setattr__(self, "tools", tuple(self.tools) or None)
        if self.reasoning_effort is not None:
            if self.reasoning_effort not in _REASONING_EFFORTS:
                raise _invalid(
                    f"reasoning_effort must be one of low, medium, high; got {self.reasoning_effort!r}"
                )
            if self.thinking is not None:
                raise _invalid("Use reasoning_effort or thinking, not both")
        object.__setattr__(self, "tool_choice", self._normalize_tool_choice())

    def _normalize_tool_choice(self) -> ToolChoice | None:
        choice = self.tool_choice
        if choice is None:
            return None
        if isinstance(choice, NamedToolChoice):
            names = {t.name for t in self.tools or ()}
            if choice.name not in names:
                raise _invalid(f"tool_choice names unknown tool {choice.name!r}")
            return choice
        if choice == "any":
            return "required"
        if choice not in _TOOL_CHOICE_MODES:
            raise _invalid(
                f"tool_choice must be auto, none, required, any or a named tool; got {choice!r}"
            )
        return choice

    @property
    def uses_tools(self) -> bool:
        return bool(self.tools) or any(
            m.tool_calls or m.role is Role.TOOL for m in self.messages
        )

    @property
    def uses_reasoning(self) -> bool:
        return self.reasoning_effort is not None or (
            self.thinking is not None and self.thinking.enabled
        )

    def with_stream(self, stream: bool = True) -> Request:
        return replace(self, stream=stream)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Request:
        """Validate a loosely-typed request mapping into a canonical Request."""
        if not isinstance(data, Mapping):
            raise _invalid(f"Request must be a mapping, got {type(data).__name__}")
        tools = None
        if data.get("tools"):
            tools = tuple(_tool_spec_from_dict(t) for t in data["tools"])
        tool_choice = data.get("tool_choice")
        if isinstance(tool_choice, Mapping):
            fn = tool_choice.get("function") or tool_choice
            tool_choice = NamedToolChoice(name=fn.get("name", ""))
        thinking = data.get("thinking")
        if isinstance(thinking, Mapping):
            thinking = ThinkingConfig(
                enabled=bool(thinking.get("enabled", thinking.get("type") == "enabled")),
                budget_tokens=thinking.get("budget_tokens"),
            )
        return cls(
            model=data.get("model", ""),
            messages=tuple(Message.from_dict(m) for m in data.get("messages") or ()),
            temperature=data.get("temperature"),
            top_p=data.get("top_p"),
            max_tokens=data.get("max_tokens"),
            stop=data.get("stop"),
            tools=tools,
            tool_choice=tool_choice,
            stream=bool(data.get("stream", False)),
            reasoning_effort=data.get("reasoning_effort"),
            thinking=thinking,
        )


def _tool_spec_from_dict(data: Mapping[str, Any]) -> ToolSpec:
    fn = data.get("function", data)
    return ToolSpec(
        name=fn.get("name", ""),
        description=fn.get("description"),
        parameters=fn.get("parameters") or {"type": "object", "properties": {}},
    )


# --- Responses --------------------------------------------------------------


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(
        cls,
        prompt_tokens: Any = None,
        completion_tokens: Any = None,
        total_tokens: Any = None,
    ) -> Usage:
        """Build usage from possibly-missing provider counters."""
        prompt = int(prompt_tokens or 0)
        completion = int(completion_tokens or 0)
        total = int(total_tokens) if total_tokens else prompt + completion
        return cls(prompt, completion, total)


@dataclass(frozen=True)
class Choice:
    index: int
    message: Message
    finish_reason: FinishReason = FinishReason.STOP


@dataclass(frozen=True)
class Response:
    id: str
    model: str
    choices: tuple[Choice, ...]
    usage: Usage = field(default_factory=Usage)

    @property
    def message(self) -> Message:
        return self.choices[0].message

    @property
    def content(self) -> str | None:
        return self.choices[0].message.content if self.choices else None


# --- Streaming --------------------------------------------------------------


@dataclass(frozen=True)
class ToolCallDelta:
    """Fragment of a streamed tool call; ``arguments`` is a raw JSON fragment."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class Delta:
    """One incremental fragment of a streamed choice."""

    index: int = 0
    role: Role | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: tuple[ToolCallDelta, ...] | None = None
    finish_reason: FinishReason | None = None
    usage: Usage | None = None

    def is_empty(self) -> bool:
        return not (
            self.content
            or self.reasoning_content
            or self.tool_calls
            or self.finish_reason is not None
        )


@dataclass(frozen=True)
class ErrorDelta:
    """Terminal stream event carrying a classified failure."""

    record: ErrorRecord
    index: int = 0

    @property
    def kind(self) -> ErrorKind:
        return self.record.kind

    @property
    def message(self) -> str:
        return self.record.message

    @property
    def provider(self) -> str | None:
        return self.record.provider

    @property
    def recoverable(self) -> bool:
        return self.record.recoverable

    @property
    def http_status(self) -> int | None:
        return self.record.http_status


StreamEvent = Union[Delta, ErrorDelta]


# --- Embeddings -------------------------------------------------------------


@dataclass(frozen=True)
class EmbeddingRequest:
    model: str
    input: tuple[str, ...]
    dimensions: int | None = None

    def __post_init__(self) -> None:
        inputs = (self.input,) if isinstance(self.input, str) else tuple(self.input)
        if not inputs:
            raise _invalid("EmbeddingRequest.input must not be empty")
        object.__setattr__(self, "input", inputs)
        if not self.model:
            raise _invalid("EmbeddingRequest.model must be non-empty")
        if self.dimensions is not None and self.dimensions <= 0:
            raise _invalid("dimensions must be > 0")


@dataclass(frozen=True)
class Embedding:
    index: int
    embedding: tuple[float, ...]


@dataclass(frozen=True)
class EmbeddingResponse:
    model: str
    data: tuple[Embedding, ...]
    usage: Usage = field(default_factory=Usage)
