# Overview: Exponential backoff with jitter for transient sync failures.

"""
Retry helpers for the sync client.

Only transient kinds are retried: transport failures (network, timeout, 5xx)
and rate limiting, where the server's retryAfter hint replaces the computed
delay. Everything else propagates on the first failure.

Usage:
    result = call_with_retry(
        lambda: remote.create("products", payload, key),
        max_attempts=5, base=0.5, cap=30.0, wait=cancel_event.wait,
    )
"""
from __future__ import annotations

import logging
import random
from typing import Callable, TypeVar

from ..errors import RateLimitError, SyncCancelled, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE = (TransportError, RateLimitError)


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: float = 0.25,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retry number ``attempt`` (0-based): base * 2**attempt,
    capped, then spread by +/- ``jitter``.
    """
    delay = min(cap, base * (2 ** attempt))
    return max(0.0, delay * (1 + jitter * (2 * rng() - 1)))


def call_with_retry(
    func: Callable[[], T],
    *,
    max_attempts: int = 5,
    base: float = 0.5,
    cap: float = 30.0,
    jitter: float = 0.25,
    wait: Callable[[float], bool] | None = None,
    rng: Callable[[], float] = random.random,
    description: str = "request",
) -> T:
    """
    Call ``func`` until it succeeds or ``max_attempts`` transient failures.

    ``wait(seconds)`` sleeps and returns True when the caller cancelled,
    which raises SyncCancelled. The last transient error is re-raised once
    attempts run out.
    """
    for attempt in range(max_attempts):
        try:
            return func()
        except RETRYABLE as exc:
            if attempt == max_attempts - 1:
                logger.error("%s failed after %d attempts: %s", description, max_attempts, exc)
                raise
            if isinstance(exc, RateLimitError):
                delay = min(cap, float(exc.retry_after))
            else:
                delay = backoff_delay(attempt, base, cap, jitter, rng)
            logger.warning(
                "%s attempt %d/%d failed, retrying in %.2fs: %s",
                description,
                attempt + 1,
                max_attempts,
                delay,
                exc,
            )
            if wait is not None and wait(delay):
                raise SyncCancelled(f"{description} cancelled") from exc
    raise RuntimeError("max_attempts must be at least 1")
