from __future__ import annotations

import asyncio

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from switchboard.errors import (
    ErrorKind,
    ErrorRecord,
    InvalidRequestError,
    ProviderError,
    RateLimitError,
)
from switchboard.retry import RetryPolicy, compute_delay, retry_async, should_retry

pytestmark = pytest.mark.unit

SERVER_ERROR = ErrorRecord.create(ErrorKind.SERVER, "upstream down", http_status=503)


def test_policy_rejects_invalid_values() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=-1)
    with pytest.raises(ValueError, match="backoff_multiplier"):
        RetryPolicy(backoff_multiplier=0.5)
    with pytest.raises(ValueError, match="max_elapsed_s"):
        RetryPolicy(max_elapsed_s=-1)


def test_should_retry_requires_recoverable_and_budget() -> None:
    policy = RetryPolicy(max_attempts=2)
    assert should_retry(SERVER_ERROR, 0, policy)
    assert should_retry(SERVER_ERROR, 1, policy)
    assert not should_retry(SERVER_ERROR, 2, policy)
    auth = ErrorRecord.create(ErrorKind.AUTHENTICATION, "bad key", http_status=401)
    assert not should_retry(auth, 0, policy)


def test_backoff_doubles_until_cap() -> None:
    policy = RetryPolicy(base_delay_s=1.0, max_delay_s=5.0)
    delays = [compute_delay(SERVER_ERROR, n, policy) for n in range(5)]
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


@given(
    base=st.floats(min_value=0.0, max_value=10.0),
    cap=st.floats(min_value=0.0, max_value=120.0),
    attempts=st.integers(min_value=1, max_value=20),
)
@settings(max_examples=200, deadline=None)
def test_backoff_is_monotonic_and_capped(base: float, cap: float, attempts: int) -> None:
    policy = RetryPolicy(base_delay_s=base, max_delay_s=cap)
    delays = [compute_delay(SERVER_ERROR, n, policy) for n in range(attempts)]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert all(d <= cap for d in delays)


@given(attempt=st.integers(min_value=0, max_value=50))
def test_retry_after_is_honored_exactly(attempt: int) -> None:
    record = ErrorRecord.create(ErrorKind.RATE_LIMIT, "slow down", retry_after=60)
    policy = RetryPolicy(max_delay_s=5.0)
    assert compute_delay(record, attempt, policy) == 60.0


def test_jitter_stays_within_backoff() -> None:
    policy = RetryPolicy(base_delay_s=2.0, jitter=True)
    for attempt in range(4):
        assert 0.0 <= compute_delay(SERVER_ERROR, attempt, policy) <= 2.0 * 2**attempt


@pytest.mark.asyncio
async def test_retry_async_retries_recoverable_then_succeeds() -> None:
    calls: list[int] = []
    retried: list[tuple[ErrorKind, int, float]] = []

    async def attempt(n: int) -> str:
        calls.append(n)
        if n < 2:
            raise ProviderError("down", record=SERVER_ERROR)
        return "ok"

    result = await retry_async(
        attempt,
        policy=RetryPolicy(base_delay_s=0.0),
        on_retry=lambda record, n, delay: retried.append((record.kind, n, delay)),
    )
    assert result == "ok"
    assert calls == [0, 1, 2]
    assert retried == [(ErrorKind.SERVER, 0, 0.0), (ErrorKind.SERVER, 1, 0.0)]


@pytest.mark.asyncio
async def test_retry_async_never_retries_client_errors() -> None:
    calls = 0

    async def attempt(n: int) -> str:
        nonlocal calls
        calls += 1
        raise InvalidRequestError("bad")

    with pytest.raises(InvalidRequestError):
        await retry_async(attempt, policy=RetryPolicy(base_delay_s=0.0))
    assert calls == 1


@pytest.mark.asyncio
async def test_retry_async_surfaces_last_error_when_attempts_run_out() -> None:
    async def attempt(n: int) -> str:
        raise ProviderError(f"down {n}", record=SERVER_ERROR)

    with pytest.raises(ProviderError, match="down 2"):
        await retry_async(attempt, policy=RetryPolicy(max_attempts=2, base_delay_s=0.0))


@pytest.mark.asyncio
async def test_retry_async_abandons_instead_of_sleeping_past_deadline() -> None:
    calls = 0
    record = ErrorRecord.create(ErrorKind.RATE_LIMIT, "slow", retry_after=60)

    async def attempt(n: int) -> str:
        nonlocal calls
        calls += 1
        raise RateLimitError("slow", record=record)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(RateLimitError):
        await retry_async(attempt, policy=RetryPolicy(max_elapsed_s=1.0))
    assert calls == 1
    assert loop.time() - started < 1.0


@pytest.mark.asyncio
async def test_retry_async_does_not_catch_foreign_exceptions() -> None:
    async def attempt(n: int) -> str:
        raise KeyError("boom")

    with pytest.raises(KeyError):
        await retry_async(attempt, policy=RetryPolicy(base_delay_s=0.0))
