"""Retry and backoff helpers for provider calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import random
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryDirective:
    """Instruction returned from ``classify_err`` for ``with_retry``."""

    retry: bool
    delay_override_ms: int | None = None


AsyncFactory = Callable[[], Awaitable[T]]
Classifier = Callable[[Exception], RetryDirective | bool]


def exp_backoff_delays(base_ms: int, max_attempts: int) -> list[int]:
    """Return exponential backoff delays in milliseconds."""

    base = max(1, int(base_ms))
    attempts = max(0, int(max_attempts))
    return [base * (2**index) for index in range(attempts)]


def _resolve_directive(result: RetryDirective | bool) -> RetryDirective:
    if isinstance(result, RetryDirective):
        return result
    if isinstance(result, bool):
        return RetryDirective(retry=result)
    raise TypeError("classify_err must return a boolean or RetryDirective")


def _jitter_delay_ms(delay_ms: int, jitter_pct: int) -> float:
    delay = max(0, int(delay_ms))
    pct = max(0, int(jitter_pct))
    if delay <= 0 or pct <= 0:
        return float(delay)
    jitter = delay * pct / 100.0
    return random.uniform(max(0.0, delay - jitter), delay + jitter)


async def with_retry(
    async_fn: AsyncFactory[T],
    *,
    attempts: int,
    base_ms: int,
    jitter_pct: int,
    classify_err: Classifier,
) -> T:
    """Execute ``async_fn`` with retries, exponential backoff and jitter.

    Timeouts are the caller's concern; provider clients configure them on the
    underlying HTTP client.
    """

    max_attempts = max(1, int(attempts))
    delays = exp_backoff_delays(base_ms, max_attempts)

    for attempt in range(1, max_attempts + 1):
        try:
            return await async_fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            directive = _resolve_directive(classify_err(exc))
            if not directive.retry or attempt >= max_attempts:
                raise
            delay_ms = directive.delay_override_ms
            if delay_ms is None:
                delay_ms = delays[attempt - 1]
            jittered_ms = _jitter_delay_ms(delay_ms, jitter_pct)
            if jittered_ms > 0:
                await asyncio.sleep(jittered_ms / 1000.0)
    raise RuntimeError("Retry loop exited unexpectedly")


__all__ = [
    "RetryDirective",
    "exp_backoff_delays",
    "with_retry",
]
