"""Dispatcher and worker pool behavior.

Covers admission (bounded queues fail fast), retries on the retry pool,
cancellation reaching the in-flight call, stream admission and teardown
ordering. All network traffic goes through ``FakeTransport``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
import pytest

from switchboard.config import DispatcherSettings
from switchboard.dispatcher import Dispatcher, PoolStats, WorkerPool
from switchboard.errors import (
    AuthenticationError,
    ErrorKind,
    InvalidResponseError,
    ProviderError,
    RequestTimeoutError,
    ResourceExhaustedError,
    UnsupportedFeatureError,
)
from switchboard.models import Delta, EmbeddingRequest, ErrorDelta, ToolSpec
from switchboard.transport import HttpResponse
from tests.conftest import OPENAI_MODEL, FakeStream, FakeTransport
from tests.helpers import chat, config_for, json_response, sse

pytestmark = pytest.mark.unit

CONFIG = config_for("openai")
OK_BODY = {
    "id": "chatcmpl-1",
    "model": OPENAI_MODEL,
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
}
SERVER_DOWN = {"error": {"message": "upstream unavailable"}}


def _settings(**overrides: Any) -> DispatcherSettings:
    values: dict[str, Any] = {"retry_base_delay_s": 0.0, "shutdown_timeout_s": 0.5}
    values.update(overrides)
    return DispatcherSettings(**values)


def _hung_stream() -> FakeStream:
    return FakeStream([sse({"choices": [{"index": 0, "delta": {"content": "Hi"}}]})], hang=True)


# =============================================================================
# WorkerPool
# =============================================================================


@pytest.mark.asyncio
async def test_pool_runs_jobs_and_counts_outcomes() -> None:
    pool = WorkerPool("request", workers=2, queue_size=4)

    async def ok() -> int:
        return 1

    async def boom() -> int:
        raise KeyError("x")

    assert await pool.submit(ok) == 1
    with pytest.raises(KeyError):
        await pool.submit(boom)

    stats = pool.stats()
    assert (stats.completed, stats.failed, stats.active, stats.queued) == (1, 1, 0, 0)
    await pool.shutdown(0.1)


@pytest.mark.asyncio
async def test_pool_bounds_concurrency_to_worker_count() -> None:
    pool = WorkerPool("request", workers=2, queue_size=8)
    running = 0
    peak = 0

    async def job() -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    await asyncio.gather(*(pool.submit(job) for _ in range(6)))
    assert peak == 2
    await pool.shutdown(0.1)


@pytest.mark.asyncio
async def test_full_queue_is_rejected_immediately() -> None:
    pool = WorkerPool("retry", workers=1, queue_size=1)
    release = asyncio.Event()

    async def wait() -> None:
        await release.wait()

    first = pool.submit(wait)
    with pytest.raises(ResourceExhaustedError) as exc_info:
        pool.submit(wait)

    assert exc_info.value.record.context == {"pool": "retry", "queue_size": 1}
    assert exc_info.value.recoverable is True
    assert "retry_queue_size" in (exc_info.value.hint or "")
    assert pool.stats().rejected == 1
    release.set()
    await first
    await pool.shutdown(0.1)


def test_pool_requires_capacity() -> None:
    with pytest.raises(ValueError):
        WorkerPool("request", workers=0, queue_size=1)


@pytest.mark.asyncio
async def test_shutdown_cancels_stuck_and_queued_jobs() -> None:
    pool = WorkerPool("request", workers=1, queue_size=2)

    async def forever() -> None:
        await asyncio.Event().wait()

    running = pool.submit(forever)
    queued = pool.submit(forever)
    await asyncio.sleep(0)
    await pool.shutdown(0.05)

    assert running.cancelled()
    assert queued.cancelled()
    with pytest.raises(ResourceExhaustedError, match="request pool is shut down") as exc_info:
        pool.submit(forever)
    assert exc_info.value.recoverable is False


def test_utilization_counts_active_and_queued() -> None:
    stats = PoolStats("request", workers=2, queue_size=8, queued=3, active=2, completed=0, failed=0, rejected=0)
    assert stats.utilization == pytest.approx(0.5)


# =============================================================================
# Synchronous calls
# =============================================================================


@pytest.mark.asyncio
async def test_complete_round_trip() -> None:
    transport = FakeTransport(responses=[json_response(OK_BODY)])
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        response = await dispatcher.complete(chat(OPENAI_MODEL), CONFIG)

    assert response.content == "ok"
    assert transport.requests[0].url == "https://api.openai.com/v1/chat/completions"
    assert transport.timeouts == [60.0]


@pytest.mark.asyncio
async def test_per_config_timeout_is_used() -> None:
    transport = FakeTransport(responses=[json_response(OK_BODY)])
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        await dispatcher.complete(chat(OPENAI_MODEL), config_for("openai", timeout_s=7.5))
    assert transport.timeouts == [7.5]


@pytest.mark.asyncio
async def test_request_pool_saturation_raises_synchronously() -> None:
    transport = FakeTransport(delay=0.5)
    settings = _settings(request_workers=1, request_queue_size=1)
    async with Dispatcher(settings, transport=transport) as dispatcher:
        first = dispatcher.dispatch(chat(OPENAI_MODEL), CONFIG)
        with pytest.raises(ResourceExhaustedError) as exc_info:
            dispatcher.dispatch(chat(OPENAI_MODEL), CONFIG)
        assert exc_info.value.record.kind is ErrorKind.RESOURCE_EXHAUSTED
        first.cancel()


@pytest.mark.asyncio
async def test_recoverable_failure_is_retried_on_retry_pool() -> None:
    transport = FakeTransport(responses=[json_response(SERVER_DOWN, 503), json_response(OK_BODY)])
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        response = await dispatcher.complete(chat(OPENAI_MODEL), CONFIG)
        stats = dispatcher.stats()

    assert response.content == "ok"
    assert len(transport.requests) == 2
    assert stats["request"].failed == 1
    assert stats["retry"].completed == 1


@pytest.mark.asyncio
async def test_retries_stop_after_max_attempts() -> None:
    transport = FakeTransport(responses=[json_response(SERVER_DOWN, 503)] * 5)
    async with Dispatcher(_settings(retry_max_attempts=2), transport=transport) as dispatcher:
        with pytest.raises(ProviderError) as exc_info:
            await dispatcher.complete(chat(OPENAI_MODEL), CONFIG)

    assert exc_info.value.record.kind is ErrorKind.SERVER
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    transport = FakeTransport(responses=[json_response({"error": {"message": "bad key"}}, 401)])
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        with pytest.raises(AuthenticationError) as exc_info:
            await dispatcher.complete(chat(OPENAI_MODEL), CONFIG)

    assert len(transport.requests) == 1
    assert exc_info.value.http_status == 401
    assert "credentials" in (exc_info.value.hint or "")


@pytest.mark.asyncio
async def test_slow_call_times_out() -> None:
    transport = FakeTransport(delay=1.0)
    async with Dispatcher(_settings(retry_max_attempts=0), transport=transport) as dispatcher:
        with pytest.raises(RequestTimeoutError) as exc_info:
            await dispatcher.complete(chat(OPENAI_MODEL), config_for("openai", timeout_s=0.05))
    assert exc_info.value.recoverable is True


@pytest.mark.asyncio
async def test_transport_failure_is_classified() -> None:
    transport = FakeTransport(responses=[httpx.ConnectError("refused")])
    async with Dispatcher(_settings(retry_max_attempts=0), transport=transport) as dispatcher:
        with pytest.raises(ProviderError) as exc_info:
            await dispatcher.complete(chat(OPENAI_MODEL), CONFIG)
    assert exc_info.value.record.kind is ErrorKind.CONNECTION
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        HttpResponse(200, {}, b"<html>oops</html>"),
        HttpResponse(200, {}, b"[1, 2]"),
        json_response({"choices": ["not-an-object"]}),
    ],
)
async def test_unusable_bodies_are_invalid_response(response: HttpResponse) -> None:
    transport = FakeTransport(responses=[response])
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        with pytest.raises(InvalidResponseError):
            await dispatcher.complete(chat(OPENAI_MODEL), CONFIG)
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_validation_errors_raise_before_any_call() -> None:
    transport = FakeTransport()
    weather = ToolSpec(name="get_weather")
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        with pytest.raises(UnsupportedFeatureError):
            dispatcher.dispatch(chat("llama3.2", tools=(weather,)), config_for("ollama"))
        with pytest.raises(UnsupportedFeatureError):
            dispatcher.dispatch_stream(chat("llama3.2", tools=(weather,)), config_for("ollama"))
    assert transport.requests == []


@pytest.mark.asyncio
async def test_cancelling_the_future_aborts_the_call() -> None:
    transport = FakeTransport(delay=10.0)
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        future = dispatcher.dispatch(chat(OPENAI_MODEL), CONFIG)
        await asyncio.sleep(0.02)
        assert dispatcher.stats()["request"].active == 1

        future.cancel()
        with pytest.raises(asyncio.CancelledError):
            await future
        await asyncio.sleep(0.02)
        stats = dispatcher.stats()["request"]

    assert stats.active == 0
    assert stats.completed == 0


@pytest.mark.asyncio
async def test_embed() -> None:
    body = {
        "data": [{"index": 0, "embedding": [0.5, 0.25]}],
        "model": "text-embedding-3-small",
        "usage": {"prompt_tokens": 1, "total_tokens": 1},
    }
    transport = FakeTransport(responses=[json_response(body)])
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        response = await dispatcher.embed(
            EmbeddingRequest(model="text-embedding-3-small", input=("hi",)), CONFIG
        )
        with pytest.raises(UnsupportedFeatureError):
            await dispatcher.embed(
                EmbeddingRequest(model="x", input=("hi",)), config_for("anthropic")
            )

    assert response.data[0].embedding == (0.5, 0.25)
    assert transport.requests[0].url == "https://api.openai.com/v1/embeddings"


# =============================================================================
# Streaming
# =============================================================================


@pytest.mark.asyncio
async def test_dispatch_stream_delivers_deltas() -> None:
    data = sse(
        {"choices": [{"index": 0, "delta": {"content": "Hel"}}]},
        {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]},
        "[DONE]",
    )
    transport = FakeTransport(streams=[FakeStream([data])])
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        async with dispatcher.dispatch_stream(chat(OPENAI_MODEL), CONFIG) as channel:
            events = [event async for event in channel]

    assert "".join(e.content or "" for e in events) == "Hello"
    assert transport.requests[0].body["stream"] is True  # type: ignore[index]


@pytest.mark.asyncio
async def test_stream_admission_beyond_max_streams_is_an_error_delta() -> None:
    stream = _hung_stream()
    transport = FakeTransport(streams=[stream])
    async with Dispatcher(_settings(max_streams=1), transport=transport) as dispatcher:
        first = dispatcher.dispatch_stream(chat(OPENAI_MODEL), CONFIG)
        assert dispatcher.active_streams == 1
        opened = await asyncio.wait_for(first.__anext__(), timeout=1.0)
        assert isinstance(opened, Delta)

        rejected = await dispatcher.dispatch_stream(chat(OPENAI_MODEL), CONFIG).collect()
        assert len(rejected) == 1
        assert isinstance(rejected[0], ErrorDelta)
        assert rejected[0].kind is ErrorKind.RESOURCE_EXHAUSTED
        assert len(transport.requests) == 1

        await first.aclose()
        await asyncio.sleep(0.05)
        assert dispatcher.active_streams == 0
        assert stream.closed is True


@pytest.mark.asyncio
async def test_closing_channel_cancels_stream_task() -> None:
    stream = _hung_stream()
    transport = FakeTransport(streams=[stream])
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        channel = dispatcher.dispatch_stream(chat(OPENAI_MODEL), CONFIG)
        first = await asyncio.wait_for(channel.__anext__(), timeout=1.0)
        assert isinstance(first, Delta)

        channel.close()
        for _ in range(100):
            if stream.closed:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)

        assert stream.closed is True
        assert dispatcher.active_streams == 0
        assert await channel.collect() == []


@pytest.mark.asyncio
async def test_shutdown_cancels_open_streams() -> None:
    stream = _hung_stream()
    dispatcher = Dispatcher(_settings(), transport=FakeTransport(streams=[stream]))
    channel = dispatcher.dispatch_stream(chat(OPENAI_MODEL), CONFIG)
    await asyncio.sleep(0.02)

    await dispatcher.shutdown()
    assert stream.closed is True
    assert dispatcher.active_streams == 0
    channel.close()


@pytest.mark.asyncio
async def test_consumer_iterating_across_shutdown_sees_end_of_stream() -> None:
    stream = _hung_stream()
    dispatcher = Dispatcher(_settings(), transport=FakeTransport(streams=[stream]))
    channel = dispatcher.dispatch_stream(chat(OPENAI_MODEL), CONFIG)
    first = await asyncio.wait_for(channel.__anext__(), timeout=1.0)
    assert isinstance(first, Delta)

    consumer = asyncio.ensure_future(channel.collect())
    await asyncio.sleep(0.01)
    assert not consumer.done()

    await dispatcher.shutdown()
    assert await asyncio.wait_for(consumer, timeout=1.0) == []
    assert stream.closed is True


@pytest.mark.asyncio
async def test_stream_cancelled_before_it_starts_still_ends_channel() -> None:
    dispatcher = Dispatcher(_settings(), transport=FakeTransport(streams=[_hung_stream()]))
    channel = dispatcher.dispatch_stream(chat(OPENAI_MODEL), CONFIG)

    await dispatcher.shutdown()
    assert await asyncio.wait_for(channel.collect(), timeout=1.0) == []


# =============================================================================
# Health and monitoring
# =============================================================================


@pytest.mark.asyncio
async def test_health_check_success() -> None:
    transport = FakeTransport()
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        assert await dispatcher.health_check(CONFIG) is True
        assert dispatcher.stats()["health"].completed == 1
    assert transport.requests[0].method == "GET"
    assert transport.requests[0].url == "https://api.openai.com/v1/models"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome",
    [json_response({"error": {"message": "bad key"}}, 401), httpx.ConnectError("refused")],
)
async def test_health_check_failure_returns_false(outcome, caplog) -> None:
    transport = FakeTransport(responses=[outcome])
    caplog.set_level(logging.WARNING, logger="switchboard.dispatcher")
    async with Dispatcher(_settings(), transport=transport) as dispatcher:
        assert await dispatcher.health_check(CONFIG) is False
    assert "Health check failed for openai" in caplog.text


@pytest.mark.asyncio
async def test_monitoring_reports_stats_and_warns_on_utilization(caplog) -> None:
    seen: list[dict[str, PoolStats]] = []
    caplog.set_level(logging.WARNING, logger="switchboard.dispatcher")
    async with Dispatcher(_settings(utilization_warning=0.2), transport=FakeTransport()) as dispatcher:
        monitor = dispatcher.start_monitoring(interval_s=0.01, callback=seen.append)
        assert dispatcher.start_monitoring(interval_s=0.01) is monitor
        await asyncio.sleep(0.05)
        dispatcher.stop_monitoring()
        await asyncio.sleep(0)

    assert seen
    assert set(seen[0]) == {"request", "retry", "health", "monitor"}
    assert seen[0]["monitor"].active == 1
    assert monitor.cancelled()
    assert "monitor pool at 20% capacity" in caplog.text


def test_monitoring_interval_must_be_positive() -> None:
    dispatcher = Dispatcher(_settings(), transport=FakeTransport())
    with pytest.raises(ValueError):
        dispatcher.start_monitoring(interval_s=0)


# =============================================================================
# Lifecycle
# =============================================================================


@pytest.mark.asyncio
async def test_shutdown_order_and_idempotence(monkeypatch) -> None:
    dispatcher = Dispatcher(_settings(), transport=FakeTransport())
    order: list[str] = []
    for pool in dispatcher.pools:

        async def record(timeout: float, name: str = pool.name) -> None:
            order.append(name)

        monkeypatch.setattr(pool, "shutdown", record)

    await dispatcher.shutdown()
    await dispatcher.shutdown()
    assert order == ["monitor", "health", "retry", "request"]


@pytest.mark.asyncio
async def test_injected_transport_is_left_open() -> None:
    transport = FakeTransport()
    async with Dispatcher(_settings(), transport=transport):
        pass
    assert transport.closed is False


@pytest.mark.asyncio
async def test_owned_transport_is_closed(monkeypatch) -> None:
    dispatcher = Dispatcher(_settings())
    closed: list[bool] = []

    async def aclose() -> None:
        closed.append(True)

    monkeypatch.setattr(dispatcher._transport, "aclose", aclose)
    await dispatcher.shutdown()
    assert closed == [True]


@pytest.mark.asyncio
async def test_calls_after_shutdown_are_rejected() -> None:
    dispatcher = Dispatcher(_settings(), transport=FakeTransport())
    await dispatcher.shutdown()
    with pytest.raises(ResourceExhaustedError, match="Dispatcher is shut down") as exc_info:
        dispatcher.dispatch(chat(OPENAI_MODEL), CONFIG)
    assert exc_info.value.recoverable is False
    with pytest.raises(ResourceExhaustedError):
        await dispatcher.health_check(CONFIG)


def test_settings_default_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("SWITCHBOARD_MAX_STREAMS", "3")
    assert Dispatcher(transport=FakeTransport()).settings.max_streams == 3
