"""Retry and backoff helpers for provider calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import random
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryDirective:
    """Decision returned by a classifier for a failed attempt."""

    retry: bool
    delay_override_ms: int | None = None


AsyncFactory = Callable[[], Awaitable[T]]
Classifier = Callable[[Exception], RetryDirective]
Sleeper = Callable[[float], Awaitable[None]]


def exp_backoff_delays(base_ms: int, max_attempts: int) -> list[int]:
    """Return the nominal exponential backoff schedule in milliseconds."""

    base = max(1, int(base_ms))
    return [base * (2**index) for index in range(max(0, int(max_attempts)))]


def jittered_ms(delay_ms: int, jitter_pct: int, *, rng: random.Random | None = None) -> float:
    delay = max(0, int(delay_ms))
    pct = max(0, int(jitter_pct))
    if delay <= 0 or pct <= 0:
        return float(delay)
    spread = delay * pct / 100.0
    source = rng or random
    return source.uniform(max(0.0, delay - spread), delay + spread)


async def with_retry(
    async_fn: AsyncFactory[T],
    *,
    attempts: int,
    base_ms: int,
    jitter_pct: int,
    classify_err: Classifier,
    sleep: Sleeper = asyncio.sleep,
) -> T:
    """Run ``async_fn`` until it succeeds or the classifier gives up.

    The final error is re-raised unchanged so callers see the provider
    specific exception type.
    """

    max_attempts = max(1, int(attempts))
    delays = exp_backoff_delays(base_ms, max_attempts)

    for attempt in range(1, max_attempts + 1):
        try:
            return await async_fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            directive = classify_err(exc)
            if not directive.retry or attempt >= max_attempts:
                raise
            delay_ms = directive.delay_override_ms
            if delay_ms is None:
                delay_ms = delays[attempt - 1]
            wait_ms = jittered_ms(delay_ms, jitter_pct)
            if wait_ms > 0:
                await sleep(wait_ms / 1000.0)
    raise RuntimeError("Retry loop exited unexpectedly")


__all__ = ["RetryDirective", "exp_backoff_delays", "jittered_ms", "with_retry"]
