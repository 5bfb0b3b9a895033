"""Retry with exponential backoff and jitter.

Three flavours:
- with_retry: generic, bounded attempts.
- with_chat_retry: chat platform calls; retries rate limits and
  connection errors and reports the first rate-limit hit.
- with_infinite_retry: keeps going until success or cancellation
  (transcript mirroring must not drop turns).
"""
from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]
RetryHook = Callable[[BaseException, int, float], Awaitable[None] | None]

DEFAULT_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
CHAT_MAX_DELAY = 30.0
INFINITE_BASE_DELAY = 3.0
INFINITE_MAX_DELAY = 30.0


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    retry_after: float | None = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    A server-provided ``retry_after`` wins over the computed delay but is
    still capped at ``max_delay``.
    """
    if retry_after is not None and retry_after > 0:
        return min(float(retry_after), max_delay)
    exponential = base_delay * (2 ** (attempt - 1))
    jitter = random.uniform(0, base_delay)
    return min(exponential + jitter, max_delay)


def is_retryable_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, (RateLimitedError, ConnectionError, TimeoutError))


async def _call_hook(hook: RetryHook | None, exc: BaseException, attempt: int, delay: float) -> None:
    if hook is None:
        return
    result = hook(exc, attempt, delay)
    if asyncio.iscoroutine(result):
        await result


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    should_retry: RetryPredicate = is_retryable_transport_error,
    on_retry: RetryHook | None = None,
) -> T:
    """Call fn, retrying failures accepted by should_retry.

    The last exception propagates once attempts are exhausted.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = backoff_delay(
                attempt, base_delay, max_delay,
                getattr(exc, "retry_after", None),
            )
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt, attempts, exc, delay,
            )
            await _call_hook(on_retry, exc, attempt, delay)
            await asyncio.sleep(delay)
            attempt += 1


async def with_chat_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    max_delay: float = CHAT_MAX_DELAY,
    on_rate_limit: Callable[[], Awaitable[None]] | None = None,
) -> T:
    """Retry a chat platform call.

    ``on_rate_limit`` runs at most once per call, on the first rate-limit
    hit; callers decide whether that becomes a user-visible notice.
    """
    notified = False

    async def _on_retry(exc: BaseException, attempt: int, delay: float) -> None:
        nonlocal notified
        if isinstance(exc, RateLimitedError) and not notified:
            notified = True
            if on_rate_limit is not None:
                await on_rate_limit()

    return await with_retry(
        fn,
        attempts=attempts,
        base_delay=DEFAULT_BASE_DELAY,
        max_delay=max_delay,
        should_retry=is_retryable_transport_error,
        on_retry=_on_retry,
    )


async def with_infinite_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    base_delay: float = INFINITE_BASE_DELAY,
    max_delay: float = INFINITE_MAX_DELAY,
    should_retry: RetryPredicate | None = None,
    on_retry: RetryHook | None = None,
) -> T:
    """Retry until fn succeeds; cancellation still stops it.

    With should_retry, failures it rejects propagate immediately.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            delay = backoff_delay(
                attempt, base_delay, max_delay,
                getattr(exc, "retry_after", None),
            )
            logger.warning("Attempt %d failed (%s), retrying in %.1fs", attempt, exc, delay)
            await _call_hook(on_retry, exc, attempt, delay)
            await asyncio.sleep(delay)
            attempt += 1
