"""Streaming engine: byte stream in, canonical deltas out.

One :class:`StreamingEngine` runs per in-flight streaming call, on its own
task. It decodes the provider's framing (SSE, NDJSON or AWS event-stream),
hands each frame to the adapter, and pushes deltas onto a single-producer /
single-consumer :class:`DeltaChannel`. Failures after the stream opens are
delivered in-band as a terminal :class:`~switchboard.models.ErrorDelta`;
closing the channel is the consumer's cancellation signal.
"""

from __future__ import annotations

import asyncio
import binascii
import codecs
from contextlib import suppress
from dataclasses import dataclass, field, replace
from enum import Enum
import json
import logging
import re
import struct
from typing import TYPE_CHECKING, Any, Protocol, Union
import weakref

from switchboard.errors import ErrorKind, ErrorRecord, error_from_record
from switchboard.models import (
    Choice,
    ErrorDelta,
    FinishReason,
    Message,
    Response,
    Role,
    ToolCall,
    Usage,
)
from switchboard.providers._errors import classify_exception
from switchboard.transport import HttpResponse

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from switchboard.models import Delta, StreamEvent, ToolCallDelta
    from switchboard.providers.base import ProviderAdapter, StreamFraming
    from switchboard.transport import HttpRequest, Transport

logger = logging.getLogger(__name__)


class _Done:
    """Provider end-of-stream sentinel (SSE ``data: [DONE]``)."""

    def __repr__(self) -> str:
        return "DONE"


DONE = _Done()
Frame = Union["Mapping[str, Any]", _Done]


class StreamDecodeError(ValueError):
    """The byte stream violated its framing."""


# --- Framing ----------------------------------------------------------------


@dataclass(frozen=True)
class SSEEvent:
    data: str
    event: str | None = None
    id: str | None = None


_LINE_RE = re.compile(r"\r\n|\r|\n")


class SSEParser:
    """Incremental ``text/event-stream`` parser.

    Lines may be split across chunks at any byte, including inside a UTF-8
    sequence or between ``\\r`` and ``\\n``.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None

    def feed(self, chunk: bytes) -> list[SSEEvent]:
        self._buffer += self._decoder.decode(chunk)
        events: list[SSEEvent] = []
        while True:
            m = _LINE_RE.search(self._buffer)
            if m is None:
                break
            if m.group() == "\r" and m.end() == len(self._buffer):
                break  # may be the first half of \r\n
            line = self._buffer[: m.start()]
            self._buffer = self._buffer[m.end():]
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        """Emit any event left unterminated at end of stream."""
        self._buffer += self._decoder.decode(b"", final=True)
        events: list[SSEEvent] = []
        if self._buffer:
            line, self._buffer = self._buffer.rstrip("\r"), ""
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        event = self._process_line("")
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if not line:
            if not self._data:
                self._event = None
                return None
            event = SSEEvent(data="\n".join(self._data), event=self._event, id=self._id)
            self._data = []
            self._event = None
            return event
        if line.startswith(":"):
            return None  # comment / keep-alive
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        return None


class FrameDecoder(Protocol):
    def feed(self, chunk: bytes) -> list[Frame]: ...

    def flush(self) -> list[Frame]: ...


def _parse_json(text: str) -> Mapping[str, Any]:
    value = json.loads(text)
    if not isinstance(value, dict):
        raise StreamDecodeError(f"Expected a JSON object frame, got {type(value).__name__}")
    return value


class SSEFrameDecoder:
    """SSE events whose ``data`` is one JSON object, or the ``[DONE]`` sentinel."""

    def __init__(self) -> None:
        self._parser = SSEParser()

    def _frames(self, events: list[SSEEvent]) -> list[Frame]:
        frames: list[Frame] = []
        for event in events:
            data = event.data.strip()
            if not data:
                continue
            frames.append(DONE if data == "[DONE]" else _parse_json(data))
        return frames

    def feed(self, chunk: bytes) -> list[Frame]:
        return self._frames(self._parser.feed(chunk))

    def flush(self) -> list[Frame]:
        return self._frames(self._parser.flush())


class NDJSONFrameDecoder:
    """One JSON object per line."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[Frame]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [_parse_json(line) for line in lines if line.strip()]

    def flush(self) -> list[Frame]:
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return [_parse_json(rest)] if rest.strip() else []


_PRELUDE = struct.Struct(">III")
_TRAILER_LEN = 4


class EventStreamDecoder:
    """AWS event-stream binary framing.

    Each message is ``total_len | headers_len | prelude_crc | headers |
    payload | message_crc`` (big-endian, CRC32). Event messages become
    ``{event_type: payload}`` frames, exception messages become
    ``{exception_type: payload}`` and error messages become ``{"error": ...}``.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[Frame]:
        self._buffer += chunk
        frames: list[Frame] = []
        while len(self._buffer) >= _PRELUDE.size:
            total_len, headers_len, prelude_crc = _PRELUDE.unpack_from(self._buffer)
            if binascii.crc32(self._buffer[:8]) != prelude_crc:
                raise StreamDecodeError("Event-stream prelude checksum mismatch")
            if len(self._buffer) < total_len:
                break
            message = self._buffer[:total_len]
            self._buffer = self._buffer[total_len:]
            (message_crc,) = struct.unpack(">I", message[-_TRAILER_LEN:])
            if binascii.crc32(message[:-_TRAILER_LEN]) != message_crc:
                raise StreamDecodeError("Event-stream message checksum mismatch")
            start = _PRELUDE.size
            headers = _decode_headers(message[start : start + headers_len])
            payload = message[start + headers_len : -_TRAILER_LEN]
            frames.append(_event_frame(headers, payload))
        return frames

    def flush(self) -> list[Frame]:
        if self._buffer:
            raise StreamDecodeError("Event stream ended mid-message")
        return []


def _decode_headers(raw: bytes) -> dict[str, Any]:
    headers: dict[str, Any] = {}
    pos = 0
    while pos < len(raw):
        name_len = raw[pos]
        pos += 1
        name = raw[pos : pos + name_len].decode("utf-8")
        pos += name_len
        value_type = raw[pos]
        pos += 1
        if value_type in (0, 1):
            value: Any = value_type == 0
        elif value_type == 2:
            value = struct.unpack_from(">b", raw, pos)[0]
            pos += 1
        elif value_type == 3:
            value = struct.unpack_from(">h", raw, pos)[0]
            pos += 2
        elif value_type == 4:
            value = struct.unpack_from(">i", raw, pos)[0]
            pos += 4
        elif value_type in (5, 8):
            value = struct.unpack_from(">q", raw, pos)[0]
            pos += 8
        elif value_type in (6, 7):
            (length,) = struct.unpack_from(">H", raw, pos)
            pos += 2
            data = raw[pos : pos + length]
            pos += length
            value = data.decode("utf-8") if value_type == 7 else data
        elif value_type == 9:
            value = raw[pos : pos + 16]
            pos += 16
        else:
            raise StreamDecodeError(f"Unknown event-stream header type {value_type}")
        headers[name] = value
    return headers


def _event_frame(headers: Mapping[str, Any], payload: bytes) -> Mapping[str, Any]:
    message_type = headers.get(":message-type", "event")
    if message_type == "error":
        return {
            "error": {
                "code": headers.get(":error-code"),
                "message": headers.get(":error-message", "Event stream error"),
            }
        }
    body = json.loads(payload) if payload else {}
    if message_type == "exception":
        return {str(headers.get(":exception-type", "unknownException")): body}
    return {str(headers.get(":event-type", "unknown")): body}


def decoder_for(framing: StreamFraming) -> FrameDecoder:
    if framing == "ndjson":
        return NDJSONFrameDecoder()
    if framing == "aws-eventstream":
        return EventStreamDecoder()
    return SSEFrameDecoder()


# --- Channel ----------------------------------------------------------------


class _EndOfStream:
    pass


_EOF = _EndOfStream()


class _ChannelState:
    """State shared by the producer and the consumer handle."""

    def __init__(self, maxsize: int, poll_interval: float) -> None:
        self.queue: asyncio.Queue[StreamEvent | _EndOfStream] = asyncio.Queue(maxsize)
        self.poll_interval = poll_interval
        self.closed = False
        self.ended = False
        self._on_close: list[Callable[[], None]] = []

    def on_close(self, callback: Callable[[], None]) -> None:
        if self.closed:
            callback()
        else:
            self._on_close.append(callback)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        callbacks, self._on_close = self._on_close, []
        for callback in callbacks:
            callback()


class DeltaSender:
    """Producer side of a :class:`DeltaChannel`; owned by the engine."""

    def __init__(self, state: _ChannelState) -> None:
        self._state = state
        self.finished = False

    @property
    def cancelled(self) -> bool:
        return self._state.closed

    def on_cancel(self, callback: Callable[[], None]) -> None:
        self._state.on_close(callback)

    async def _put(self, item: StreamEvent | _EndOfStream) -> bool:
        # Re-check for consumer close at least once per poll interval while
        # blocked on a full buffer.
        state = self._state
        while not state.closed:
            try:
                await asyncio.wait_for(state.queue.put(item), timeout=state.poll_interval)
            except asyncio.TimeoutError:
                continue
            return True
        return False

    async def send(self, event: StreamEvent) -> bool:
        """Push *event*; returns False once the consumer has gone away."""
        if self.finished:
            raise RuntimeError("send() after finish()")
        return await self._put(event)

    async def finish(self) -> None:
        """Close the channel from the producer side."""
        if self.finished:
            return
        self.finished = True
        await self._put(_EOF)

    def abort(self) -> None:
        """End the channel immediately, without waiting for buffer space.

        Used when the producer task is cancelled from outside; a consumer
        blocked in ``async for`` sees the end of the stream.
        """
        self.finished = True
        state = self._state
        if state.ended:
            return
        state.ended = True
        # A full buffer means the consumer is not waiting; it stops once drained.
        with suppress(asyncio.QueueFull):
            state.queue.put_nowait(_EOF)


class DeltaChannel:
    """Consumer handle for one stream.

    Iterate with ``async for``. Closing the channel (explicitly, by leaving
    ``async with``, or by dropping the last reference) cancels the stream.

    Example:
        async with dispatcher.dispatch_stream(request, config) as channel:
            async for event in channel:
                ...
    """

    def __init__(self, *, maxsize: int = 64, poll_interval: float = 0.1) -> None:
        self._state = _ChannelState(maxsize, poll_interval)
        self._drained = False
        weakref.finalize(self, self._state.close)

    @classmethod
    def failed(cls, record: ErrorRecord) -> DeltaChannel:
        """A channel that yields one error delta and ends."""
        channel = cls(maxsize=2)
        channel._state.queue.put_nowait(ErrorDelta(record=record))
        channel._state.queue.put_nowait(_EOF)
        return channel

    def sender(self) -> DeltaSender:
        return DeltaSender(self._state)

    @property
    def closed(self) -> bool:
        return self._state.closed or self._drained

    def close(self) -> None:
        """Stop consuming; the producer aborts its connection."""
        self._state.close()

    async def aclose(self) -> None:
        self.close()

    def __aiter__(self) -> DeltaChannel:
        return self

    async def __anext__(self) -> StreamEvent:
        state = self._state
        if self.closed or (state.ended and state.queue.empty()):
            raise StopAsyncIteration
        item = await state.queue.get()
        if isinstance(item, _EndOfStream):
            self._drained = True
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> DeltaChannel:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    async def collect(self) -> list[StreamEvent]:
        """Drain every remaining event."""
        return [event async for event in self]


# --- Engine -----------------------------------------------------------------


class StreamState(str, Enum):
    OPEN = "open"
    RECEIVING = "receiving"
    CLOSED = "closed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class StreamingEngine:
    """Drive one streaming call from connection to terminal state."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        transport: Transport,
        request: HttpRequest,
        sender: DeltaSender,
        *,
        timeout: float | None = None,
    ) -> None:
        self._adapter = adapter
        self._transport = transport
        self._request = request
        self._sender = sender
        self._timeout = timeout
        self.state = StreamState.OPEN
        self.frames = 0
        self._usage: Usage | None = None

    @property
    def provider(self) -> str:
        return self._adapter.name.value

    async def run(self) -> StreamState:
        """Run to a terminal state; never raises except on task cancellation."""
        response = None
        try:
            response = await self._transport.open_stream(self._request, timeout=self._timeout)
            if response.status >= 400:
                body = await response.aread()
                failed = HttpResponse(response.status, dict(response.headers), body)
                await self._fail(self._adapter.classify_error(failed))
                return self.state
            self.state = StreamState.RECEIVING
            decoder = decoder_for(self._adapter.capabilities.stream_framing)
            async for chunk in response.aiter_bytes():
                for frame in decoder.feed(chunk):
                    if await self._handle(frame):
                        return self.state
            for frame in decoder.flush():
                if await self._handle(frame):
                    return self.state
            await self._close()
        except asyncio.CancelledError:
            self.state = StreamState.CANCELLED
            logger.debug("%s stream cancelled after %d frames", self.provider, self.frames)
            self._sender.abort()
            raise
        except Exception as exc:
            record = classify_exception(
                exc, self.provider, streaming=self.state is StreamState.RECEIVING
            )
            if self.frames and record.kind is ErrorKind.STREAMING:
                record = replace(
                    record, context={**record.context, "frames_received": self.frames}
                )
            await self._fail(record)
        finally:
            if response is not None:
                try:
                    await response.aclose()
                except Exception:
                    logger.debug("Error closing %s stream", self.provider, exc_info=True)
        return self.state

    async def _handle(self, frame: Frame) -> bool:
        """Process one frame; True when the stream reached a terminal state."""
        if self._sender.cancelled:
            self.state = StreamState.CANCELLED
            return True
        if isinstance(frame, _Done):
            await self._close()
            return True
        self.frames += 1
        record = self._adapter.stream_error(frame)
        if record is not None:
            await self._fail(record)
            return True
        early_usage = self._adapter.stream_usage(frame)
        if early_usage is not None:
            self._usage = early_usage
        delta = self._adapter.transform_streaming_chunk(frame)
        if delta is not None and delta.usage is not None and self._usage is not None:
            delta = self._merge_usage(delta, self._usage)
        if delta is not None and not await self._sender.send(delta):
            self.state = StreamState.CANCELLED
            return True
        if self._adapter.is_terminal_frame(frame):
            await self._close()
            return True
        return False

    @staticmethod
    def _merge_usage(delta: Delta, early: Usage) -> Delta:
        """Fill counters the finishing frame left at zero from earlier frames."""
        usage = delta.usage or Usage()
        merged = Usage.of(
            usage.prompt_tokens or early.prompt_tokens,
            usage.completion_tokens or early.completion_tokens,
        )
        return replace(delta, usage=merged)

    async def _close(self) -> None:
        self.state = StreamState.CLOSED
        await self._sender.finish()

    async def _fail(self, record: ErrorRecord) -> None:
        self.state = StreamState.ERRORED
        logger.debug("%s stream failed: %s", self.provider, record.summary())
        if await self._sender.send(ErrorDelta(record=record)):
            await self._sender.finish()


# --- Accumulation -----------------------------------------------------------


@dataclass
class _ToolCallParts:
    id: str | None = None
    name: str | None = None
    arguments: list[str] = field(default_factory=list)


@dataclass
class _ChoiceParts:
    content: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    tool_calls: dict[int, _ToolCallParts] = field(default_factory=dict)
    finish_reason: FinishReason | None = None


class StreamAccumulator:
    """Rebuild a complete Response from a sequence of deltas."""

    def __init__(self) -> None:
        self._choices: dict[int, _ChoiceParts] = {}
        self.usage: Usage | None = None
        self.error: ErrorRecord | None = None

    def add(self, event: StreamEvent) -> None:
        if isinstance(event, ErrorDelta):
            self.error = event.record
            return
        parts = self._choices.setdefault(event.index, _ChoiceParts())
        if event.content:
            parts.content.append(event.content)
        if event.reasoning_content:
            parts.reasoning.append(event.reasoning_content)
        for fragment in event.tool_calls or ():
            call = self._slot(parts, fragment)
            call.id = call.id or fragment.id
            call.name = call.name or fragment.name
            if fragment.arguments:
                call.arguments.append(fragment.arguments)
        if event.finish_reason is not None:
            parts.finish_reason = event.finish_reason
        if event.usage is not None:
            self.usage = event.usage

    @staticmethod
    def _slot(parts: _ChoiceParts, fragment: ToolCallDelta) -> _ToolCallParts:
        """Find the call a fragment extends.

        Fragments are grouped by index, except that a fragment whose id differs
        from the call already at that index starts a new call. Providers that
        send whole calls per chunk (Gemini) restart indices in every chunk.
        """
        if fragment.id is not None:
            for call in parts.tool_calls.values():
                if call.id == fragment.id:
                    return call
        existing = parts.tool_calls.get(fragment.index)
        if existing is None:
            return parts.tool_calls.setdefault(fragment.index, _ToolCallParts())
        if fragment.id is not None and existing.id is not None:
            slot = max(parts.tool_calls) + 1
            return parts.tool_calls.setdefault(slot, _ToolCallParts())
        return existing

    def content(self, index: int = 0) -> str:
        parts = self._choices.get(index)
        return "".join(parts.content) if parts else ""

    def to_response(self, *, id: str = "", model: str = "") -> Response:  # noqa: A002
        choices = []
        for index in sorted(self._choices):
            parts = self._choices[index]
            calls = tuple(
                ToolCall.create(c.id or f"call_{index}_{i}", c.name or "", "".join(c.arguments))
                for i, c in sorted(parts.tool_calls.items())
            )
            message = Message(
                role=Role.ASSISTANT,
                content="".join(parts.content) or None,
                tool_calls=calls or None,
                reasoning_content="".join(parts.reasoning) or None,
            )
            choices.append(Choice(index, message, parts.finish_reason or FinishReason.STOP))
        return Response(id=id, model=model, choices=tuple(choices), usage=self.usage or Usage())


async def collect_stream(channel: DeltaChannel, *, model: str = "") -> Response:
    """Consume *channel* into a Response, raising if the stream ended in error."""
    accumulator = StreamAccumulator()
    async with channel:
        async for event in channel:
            accumulator.add(event)
    if accumulator.error is not None:
        raise error_from_record(accumulator.error)
    return accumulator.to_response(model=model)
