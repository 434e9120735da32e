"""Retry policies and the coroutine that applies them.

A ``RetryPolicy`` bundles how many attempts a call gets, how long to
wait before the next attempt, and which errors end the loop at once.
``retry_async`` is the only place that loops; the fetcher declares one
policy per kind of request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import FetchError, TerminalFetchError, TransientFetchError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


def _is_terminal(error: BaseException) -> bool:
    return isinstance(error, TerminalFetchError)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, FetchError)


@dataclass(frozen=True)
class RetryPolicy:
    """``backoff(attempt, error)`` returns the delay after a failed attempt.

    ``attempt`` starts at 1. Errors that are neither terminal nor
    retryable propagate immediately as well.
    """

    max_attempts: int
    backoff: Callable[[int, BaseException], float]
    is_terminal: Callable[[BaseException], bool] = _is_terminal
    is_retryable: Callable[[BaseException], bool] = _is_retryable


def linear_backoff(base: float) -> Callable[[int, BaseException], float]:
    """Wait ``attempt * base`` seconds after each failure."""

    def backoff(attempt: int, error: BaseException) -> float:
        return attempt * base

    return backoff


def timeout_aware_backoff(timeout_delay: float, base: float) -> Callable[[int, BaseException], float]:
    """Retry timeouts after a fixed short delay, back off linearly otherwise."""

    def backoff(attempt: int, error: BaseException) -> float:
        if isinstance(error, TransientFetchError) and error.timeout:
            return timeout_delay
        return attempt * base

    return backoff


async def retry_async(
    policy: RetryPolicy,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    sleep: Sleep = asyncio.sleep,
    label: Optional[str] = None,
    **kwargs: Any,
) -> T:
    """Await ``func(*args, **kwargs)`` under ``policy``.

    Returns the first successful result. Terminal and non-retryable
    errors are raised straight away; when attempts run out the error
    from the last attempt is raised.
    """
    label = label or getattr(func, "__name__", "call")
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            if policy.is_terminal(exc) or not policy.is_retryable(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.warning("%s failed after %d attempts: %s", label, attempt, exc)
                raise
            delay = policy.backoff(attempt, exc)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label, attempt, policy.max_attempts, exc, delay,
            )
            await sleep(delay)
            attempt += 1
