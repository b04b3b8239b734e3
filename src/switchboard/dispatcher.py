"""Bounded-concurrency dispatcher.

The dispatcher owns four worker pools with distinct purposes so a burst of
retries cannot starve fresh requests and health probes never queue behind
user traffic:

- ``request``: first attempt of every synchronous call
- ``retry``: re-attempts scheduled by the retry policy
- ``health``: provider reachability probes
- ``monitor``: periodic pool statistics

Each pool is a fixed set of asyncio worker tasks over a bounded queue. A full
queue is reported as ``resource-exhausted`` instead of blocking the caller.
Streaming calls bypass the pools: each stream gets its own task running a
:class:`~switchboard.streaming.StreamingEngine`, capped by ``max_streams``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass
from functools import partial
import logging
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from switchboard.config import DispatcherSettings, load_settings
from switchboard.errors import (
    ErrorKind,
    ErrorRecord,
    InvalidResponseError,
    ResourceExhaustedError,
    SwitchboardError,
    error_from_record,
)
from switchboard.providers import get_adapter
from switchboard.providers._errors import classify_exception, hint_for
from switchboard.retry import retry_async
from switchboard.streaming import DeltaChannel, StreamingEngine
from switchboard.transport import HttpxTransport

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from switchboard.config import ProviderConfig
    from switchboard.models import EmbeddingRequest, EmbeddingResponse, Request, Response
    from switchboard.providers.base import ProviderAdapter
    from switchboard.streaming import DeltaSender
    from switchboard.transport import HttpRequest, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time view of one pool."""

    name: str
    workers: int
    queue_size: int
    queued: int
    active: int
    completed: int
    failed: int
    rejected: int

    @property
    def utilization(self) -> float:
        """Fraction of total capacity (workers plus queue slots) in use."""
        capacity = self.workers + self.queue_size
        return (self.active + self.queued) / capacity if capacity else 0.0


@dataclass
class _Job(Generic[T]):
    fn: Callable[[], Awaitable[T]]
    future: asyncio.Future[T]


def _consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'exception was never retrieved' for abandoned job futures."""
    if not fut.cancelled():
        fut.exception()


def _cancel_if_cancelled(task: asyncio.Future[Any], fut: asyncio.Future[Any]) -> None:
    if fut.cancelled() and not task.done():
        task.cancel()


def _closed_error(what: str) -> ResourceExhaustedError:
    message = f"{what} is shut down"
    return ResourceExhaustedError(
        message,
        record=ErrorRecord.create(ErrorKind.RESOURCE_EXHAUSTED, message, recoverable=False),
    )


class WorkerPool:
    """Fixed number of worker tasks draining a bounded job queue.

    ``submit`` never blocks: it enqueues and returns a future, or raises
    :class:`ResourceExhaustedError` when the queue is full. Cancelling the
    returned future cancels the job, including one already running.
    """

    def __init__(self, name: str, *, workers: int, queue_size: int) -> None:
        if workers < 1 or queue_size < 1:
            raise ValueError("WorkerPool needs at least one worker and one queue slot")
        self.name = name
        self.workers = workers
        self.queue_size = queue_size
        self._queue: asyncio.Queue[_Job[Any]] = asyncio.Queue(queue_size)
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False
        self._active = 0
        self._completed = 0
        self._failed = 0
        self._rejected = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> PoolStats:
        return PoolStats(
            name=self.name,
            workers=self.workers,
            queue_size=self.queue_size,
            queued=self._queue.qsize(),
            active=self._active,
            completed=self._completed,
            failed=self._failed,
            rejected=self._rejected,
        )

    def _start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"switchboard:{self.name}:{i}")
            for i in range(self.workers)
        ]

    def submit(self, fn: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Enqueue ``fn()``; the future resolves with its result."""
        if self._closed:
            raise _closed_error(f"{self.name} pool")
        if not self._tasks:
            self._start()
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait(_Job(fn, future))
        except asyncio.QueueFull:
            self._rejected += 1
            message = f"{self.name} pool queue is full ({self.queue_size} pending)"
            logger.warning(message)
            raise ResourceExhaustedError(
                message,
                hint=f"Raise {self.name}_queue_size in DispatcherSettings or apply backpressure.",
                record=ErrorRecord.create(
                    ErrorKind.RESOURCE_EXHAUSTED,
                    message,
                    context={"pool": self.name, "queue_size": self.queue_size},
                ),
            ) from None
        return future

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: _Job[Any]) -> None:
        if job.future.done():
            return  # cancelled while queued
        task = asyncio.create_task(job.fn())
        job.future.add_done_callback(partial(_cancel_if_cancelled, task))
        self._active += 1
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            job.future.cancel()
            raise
        finally:
            self._active -= 1
        self._settle(task, job.future)

    def _settle(self, task: asyncio.Task[Any], future: asyncio.Future[Any]) -> None:
        if task.cancelled():
            future.cancel()
            return
        exc = task.exception()
        if future.done():
            return
        if exc is not None:
            self._failed += 1
            future.add_done_callback(_consume_future_exception)
            future.set_exception(exc)
        else:
            self._completed += 1
            future.set_result(task.result())

    async def shutdown(self, timeout: float) -> None:
        """Stop accepting work, drain up to *timeout* seconds, then cancel."""
        self._closed = True
        if not self._tasks:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "%s pool did not drain within %.1fs; cancelling %d active and %d queued job(s)",
                self.name,
                timeout,
                self._active,
                self._queue.qsize(),
            )
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        while not self._queue.empty():
            self._queue.get_nowait().future.cancel()
            self._queue.task_done()


def _cancel_task(loop: asyncio.AbstractEventLoop, task: asyncio.Task[Any]) -> None:
    # May run from a GC finalizer after the loop has closed.
    with suppress(RuntimeError):
        loop.call_soon_threadsafe(task.cancel)


def _end_channel(sender: DeltaSender, task: asyncio.Task[Any]) -> None:
    # A task cancelled before its first step never reaches the engine.
    if task.cancelled():
        sender.abort()


class Dispatcher:
    """Executes adapter calls over bounded pools.

    Construct once and pass it around; it owns its pools and, unless one is
    injected, its HTTP transport.

    Example:
        async with Dispatcher() as dispatcher:
            response = await dispatcher.complete(request, config)
    """

    def __init__(
        self,
        settings: DispatcherSettings | None = None,
        *,
        transport: Transport | None = None,
    ) -> None:
        self.settings = settings if settings is not None else load_settings()
        s = self.settings
        self._transport: Transport = transport if transport is not None else HttpxTransport()
        self._owns_transport = transport is None
        self.request_pool = WorkerPool(
            "request", workers=s.request_workers, queue_size=s.request_queue_size
        )
        self.retry_pool = WorkerPool(
            "retry", workers=s.retry_workers, queue_size=s.retry_queue_size
        )
        self.health_pool = WorkerPool(
            "health", workers=s.health_workers, queue_size=s.health_queue_size
        )
        self.monitor_pool = WorkerPool(
            "monitor", workers=s.monitor_workers, queue_size=s.monitor_queue_size
        )
        self._streams: set[asyncio.Task[Any]] = set()
        self._monitor: asyncio.Future[None] | None = None
        self._closed = False

    @property
    def pools(self) -> tuple[WorkerPool, ...]:
        return (self.request_pool, self.retry_pool, self.health_pool, self.monitor_pool)

    @property
    def active_streams(self) -> int:
        return len(self._streams)

    def stats(self) -> dict[str, PoolStats]:
        return {pool.name: pool.stats() for pool in self.pools}

    def _ensure_open(self) -> None:
        if self._closed:
            raise _closed_error("Dispatcher")

    def _timeout(self, config: ProviderConfig) -> float:
        return config.timeout_s or self.settings.call_timeout_s

    # --- Synchronous calls --------------------------------------------------

    async def _call(
        self,
        adapter: ProviderAdapter,
        http_request: HttpRequest,
        parse: Callable[[Mapping[str, Any]], T],
        *,
        timeout: float,
    ) -> T:
        """One attempt: send, classify failures, parse the body."""
        provider = adapter.name.value
        try:
            response = await asyncio.wait_for(
                self._transport.send(http_request, timeout=timeout), timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            record = classify_exception(exc, provider)
            raise error_from_record(record, hint=hint_for(record)) from exc

        if response.status >= 400:
            record = adapter.classify_error(response)
            logger.debug("%s call failed: %s", provider, record.summary())
            raise error_from_record(record, hint=hint_for(record))

        try:
            body = response.json()
        except ValueError as exc:
            record = classify_exception(exc, provider)
            raise error_from_record(record) from exc
        if not isinstance(body, Mapping):
            message = f"{provider} returned a non-object JSON body"
            raise InvalidResponseError(
                message,
                record=ErrorRecord.create(ErrorKind.INVALID_RESPONSE, message, provider=provider),
            )
        try:
            return parse(body)
        except SwitchboardError:
            raise
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            message = f"Unexpected {provider} response shape: {type(exc).__name__}: {exc}"
            raise InvalidResponseError(
                message,
                hint="The provider may have changed its API; please report this.",
                record=ErrorRecord.create(
                    ErrorKind.INVALID_RESPONSE,
                    message,
                    provider=provider,
                    http_status=response.status,
                ),
            ) from exc

    def _submit_with_retry(self, job: Callable[[], Awaitable[T]], label: str) -> asyncio.Future[T]:
        # The first attempt is admitted now so saturation raises synchronously.
        first = self.request_pool.submit(job)

        def attempt(n: int) -> Awaitable[T]:
            return first if n == 0 else self.retry_pool.submit(job)

        def on_retry(record: ErrorRecord, n: int, delay: float) -> None:
            logger.info(
                "Retrying %s after %s (attempt %d, delay %.2fs)",
                label,
                record.kind.value,
                n + 1,
                delay,
            )

        outer = asyncio.ensure_future(
            retry_async(attempt, policy=self.settings.retry_policy, on_retry=on_retry)
        )
        # Cancelling before the retry loop starts must still release the slot.
        outer.add_done_callback(partial(_cancel_if_cancelled, first))
        return outer

    def dispatch(self, request: Request, config: ProviderConfig) -> asyncio.Future[Response]:
        """Submit a non-streaming call; the future resolves to a Response.

        Invalid requests and a saturated request pool raise immediately.
        Provider failures are retried per the settings' retry policy and then
        set on the future as a :class:`SwitchboardError` carrying the record.
        Cancelling the future aborts the in-flight HTTP call.
        """
        self._ensure_open()
        adapter = get_adapter(config.provider)
        if request.stream:
            request = request.with_stream(False)
        adapter.validate_request(request)
        http_request = adapter.build_request(request, config)
        logger.debug("Dispatching %s request model=%s", adapter.name.value, request.model)
        job = partial(
            self._call,
            adapter,
            http_request,
            partial(adapter.transform_response, model=request.model),
            timeout=self._timeout(config),
        )
        return self._submit_with_retry(job, f"{adapter.name.value}:{request.model}")

    async def complete(self, request: Request, config: ProviderConfig) -> Response:
        """Dispatch and await the response."""
        return await self.dispatch(request, config)

    async def embed(self, request: EmbeddingRequest, config: ProviderConfig) -> EmbeddingResponse:
        """Compute embeddings through the same pools and retry policy."""
        self._ensure_open()
        adapter = get_adapter(config.provider)
        adapter.validate_embedding_request(request)
        http_request = adapter.build_embedding_request(request, config)
        job = partial(
            self._call,
            adapter,
            http_request,
            partial(adapter.transform_embedding_response, model=request.model),
            timeout=self._timeout(config),
        )
        return await self._submit_with_retry(job, f"{adapter.name.value}:{request.model}:embed")

    # --- Streaming ----------------------------------------------------------

    def dispatch_stream(self, request: Request, config: ProviderConfig) -> DeltaChannel:
        """Open a streaming call and return its delta channel.

        Validation failures raise here, before any connection is made. Every
        later failure, including stream admission over ``max_streams``,
        arrives on the channel as a terminal error delta.
        """
        self._ensure_open()
        adapter = get_adapter(config.provider)
        request = request.with_stream()
        adapter.validate_request(request)
        http_request = adapter.build_request(request, config)

        if len(self._streams) >= self.settings.max_streams:
            message = f"Too many concurrent streams ({self.settings.max_streams})"
            logger.warning(message)
            return DeltaChannel.failed(
                ErrorRecord.create(
                    ErrorKind.RESOURCE_EXHAUSTED,
                    message,
                    provider=adapter.name.value,
                    context={"pool": "streams", "max_streams": self.settings.max_streams},
                )
            )

        channel = DeltaChannel(
            maxsize=self.settings.stream_buffer_size,
            poll_interval=self.settings.stream_poll_interval_s,
        )
        sender = channel.sender()
        engine = StreamingEngine(
            adapter, self._transport, http_request, sender, timeout=self._timeout(config)
        )
        loop = asyncio.get_running_loop()
        task = loop.create_task(
            engine.run(), name=f"switchboard:stream:{adapter.name.value}:{request.model}"
        )
        self._streams.add(task)
        task.add_done_callback(self._streams.discard)
        task.add_done_callback(partial(_end_channel, sender))
        sender.on_cancel(partial(_cancel_task, loop, task))
        logger.debug("Opened %s stream model=%s", adapter.name.value, request.model)
        return channel

    # --- Health & monitoring ------------------------------------------------

    async def _probe(
        self, adapter: ProviderAdapter, http_request: HttpRequest, *, timeout: float
    ) -> bool:
        response = await asyncio.wait_for(
            self._transport.send(http_request, timeout=timeout), timeout
        )
        if response.status >= 400:
            raise error_from_record(adapter.classify_error(response))
        return True

    async def health_check(self, config: ProviderConfig) -> bool:
        """Probe the provider's models endpoint on the health pool.

        Returns False (and logs a warning) on any classified failure. A full
        health queue still raises :class:`ResourceExhaustedError`.
        """
        self._ensure_open()
        adapter = get_adapter(config.provider)
        probe = partial(
            self._probe, adapter, adapter.health_request(config), timeout=self._timeout(config)
        )
        future = self.health_pool.submit(probe)
        try:
            return await future
        except asyncio.CancelledError:
            raise
        except SwitchboardError as exc:
            record = exc.record
        except Exception as exc:
            record = classify_exception(exc, adapter.name.value)
        logger.warning("Health check failed for %s: %s", adapter.name.value, record.summary())
        return False

    async def _monitor_loop(
        self,
        interval_s: float,
        callback: Callable[[Mapping[str, PoolStats]], None] | None,
    ) -> None:
        threshold = self.settings.utilization_warning
        while True:
            stats = self.stats()
            for pool in stats.values():
                if pool.utilization >= threshold:
                    logger.warning(
                        "%s pool at %.0f%% capacity (%d active, %d queued)",
                        pool.name,
                        pool.utilization * 100,
                        pool.active,
                        pool.queued,
                    )
            if self._streams and len(self._streams) >= threshold * self.settings.max_streams:
                logger.warning(
                    "%d of %d stream slots in use", len(self._streams), self.settings.max_streams
                )
            if callback is not None:
                callback(stats)
            await asyncio.sleep(interval_s)

    def start_monitoring(
        self,
        interval_s: float = 30.0,
        callback: Callable[[Mapping[str, PoolStats]], None] | None = None,
    ) -> asyncio.Future[None]:
        """Report pool statistics every *interval_s* seconds until stopped."""
        self._ensure_open()
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        if self._monitor is not None and not self._monitor.done():
            return self._monitor
        self._monitor = self.monitor_pool.submit(
            partial(self._monitor_loop, interval_s, callback)
        )
        return self._monitor

    def stop_monitoring(self) -> None:
        if self._monitor is not None:
            self._monitor.cancel()
            self._monitor = None

    # --- Lifecycle ----------------------------------------------------------

    async def shutdown(self, timeout_s: float | None = None) -> None:
        """Stop every pool, cancel open streams and release the transport.

        Monitoring and health stop before the request pool so teardown never
        reports a false-negative health signal.
        """
        if self._closed:
            return
        self._closed = True
        timeout = self.settings.shutdown_timeout_s if timeout_s is None else timeout_s
        self.stop_monitoring()
        for pool in (self.monitor_pool, self.health_pool, self.retry_pool, self.request_pool):
            await pool.shutdown(timeout)
        streams = list(self._streams)
        for task in streams:
            task.cancel()
        await asyncio.gather(*streams, return_exceptions=True)
        if self._owns_transport:
            await self._transport.aclose()
        logger.debug("Dispatcher shut down (%d stream(s) cancelled)", len(streams))

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
