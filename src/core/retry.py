from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DelayFn = Callable[[int], float]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class RetryOutcome(Generic[T]):
    succeeded: bool
    attempts: int
    value: T | None = None
    last_error: Exception | None = None


def linear_backoff(step_seconds: float) -> DelayFn:
    return lambda attempt: attempt * step_seconds


def fixed_delay(seconds: float) -> DelayFn:
    return lambda _attempt: seconds


async def retry_with_backoff(
    operation: Callable[[int], Awaitable[T]],
    *,
    attempts: int,
    delay: DelayFn,
    accept: Callable[[T], bool] | None = None,
    sleep: SleepFn = asyncio.sleep,
    label: str = "operation",
) -> RetryOutcome[T]:
    """Run ``operation(attempt)`` up to ``attempts`` times, sleeping ``delay(attempt)`` between tries.

    An attempt fails when the operation raises or when ``accept`` rejects its value.
    Cancellation is never swallowed.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: Exception | None = None
    value: T | None = None
    for attempt in range(1, attempts + 1):
        try:
            value = await operation(attempt)
        except Exception as exc:
            last_error = exc
            logger.warning("%s attempt=%s/%s failed: %s", label, attempt, attempts, exc)
        else:
            if accept is None or accept(value):
                return RetryOutcome(succeeded=True, attempts=attempt, value=value)
            last_error = None
            logger.info("%s attempt=%s/%s not accepted yet", label, attempt, attempts)

        if attempt < attempts:
            await sleep(delay(attempt))

    return RetryOutcome(succeeded=False, attempts=attempts, value=value, last_error=last_error)
