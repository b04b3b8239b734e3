"""Bounded async retry driven by classified error records.

Retry decisions never look at messages or exception types: a failure is
retried only when its :class:`~switchboard.errors.ErrorRecord` says it is
recoverable and the attempt budget allows it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

from switchboard.errors import SwitchboardError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from switchboard.errors import ErrorRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with capped exponential backoff.

    ``max_attempts`` counts retries after the first call, so a policy with
    ``max_attempts=3`` makes at most four calls.
    """

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = False  # "full jitter" when enabled
    max_elapsed_s: float | None = None

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 0:
            raise ValueError("RetryPolicy.max_attempts must be >= 0")
        if self.base_delay_s < 0:
            raise ValueError("RetryPolicy.base_delay_s must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("RetryPolicy.backoff_multiplier must be >= 1")
        if self.max_delay_s < 0:
            raise ValueError("RetryPolicy.max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            raise ValueError("RetryPolicy.max_elapsed_s must be >= 0 or None")


def should_retry(record: ErrorRecord, attempt: int, policy: RetryPolicy) -> bool:
    """Return True when a failure at 0-based *attempt* should be retried."""
    return record.recoverable and attempt < policy.max_attempts


def compute_delay(record: ErrorRecord, attempt: int, policy: RetryPolicy) -> float:
    """Seconds to wait before retrying after the failure at *attempt*.

    A provider-supplied ``retry_after`` is honored exactly. Otherwise the delay
    is ``base * multiplier**attempt`` capped at ``max_delay_s``.
    """
    if record.retry_after is not None and record.retry_after >= 0:
        return float(record.retry_after)
    delay = min(
        policy.max_delay_s,
        policy.base_delay_s * (policy.backoff_multiplier ** max(0, attempt)),
    )
    if delay <= 0:
        return 0.0
    if not policy.jitter:
        return delay
    return random.random() * delay  # noqa: S311


async def retry_async(
    factory: Callable[[int], Awaitable[T]],
    *,
    policy: RetryPolicy,
    on_retry: Callable[[ErrorRecord, int, float], None] | None = None,
) -> T:
    """Run ``factory(attempt)`` with bounded retries.

    Only :class:`SwitchboardError` failures are considered; anything else
    propagates immediately. When the next delay would cross ``max_elapsed_s``
    the last error is raised instead of sleeping past the deadline.
    """
    start = time.monotonic()
    attempt = 0
    while True:
        try:
            return await factory(attempt)
        except SwitchboardError as exc:
            record = exc.record
            if not should_retry(record, attempt, policy):
                raise
            delay = compute_delay(record, attempt, policy)
            if policy.max_elapsed_s is not None:
                elapsed = time.monotonic() - start
                if elapsed + delay > policy.max_elapsed_s:
                    logger.debug(
                        "Retry budget exhausted after %d attempts (%s)",
                        attempt + 1,
                        record.kind.value,
                    )
                    raise
            if on_retry is not None:
                on_retry(record, attempt, delay)
            logger.debug(
                "Retrying after %s (attempt %d, delay %.2fs)",
                record.kind.value,
                attempt + 1,
                delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)
            attempt += 1
