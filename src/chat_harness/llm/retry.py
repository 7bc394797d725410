"""Retry executor with exponential backoff, jitter and cancellation."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from chat_harness.cancellation import CancellationToken
from chat_harness.errors import (
    AuthenticationError,
    InvalidStreamError,
    MaxTurnsExceededError,
    OperationCancelledError,
)

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Matched case-insensitively against the error message and the class names
# in the exception's MRO.
RETRYABLE_ERROR_PATTERNS: tuple[str, ...] = (
    "429",
    "502",
    "503",
    "504",
    "econnreset",
    "etimedout",
    "enotfound",
    "econnrefused",
    "connection reset",
    "connection refused",
    "connecterror",
    "name or service not known",
    "temporary failure in name resolution",
    "timed out",
    "timeout",
    "remoteprotocolerror",
    "socket hang up",
    "fetch failed",
    "network",
    "rate limit",
    "resource exhausted",
)

# Never retried, whatever their message says.
_NEVER_RETRY = (
    AuthenticationError,
    InvalidStreamError,
    MaxTurnsExceededError,
    OperationCancelledError,
)

_JITTER = 0.25


@dataclass
class RetryOptions:
    """Backoff policy for :func:`with_retry`.

    Parameters
    ----------
    max_attempts:
        Total attempts including the first (>= 1).
    initial_delay:
        Delay before the second attempt, in seconds.
    max_delay:
        Upper bound on any single delay, jitter included.
    cancel_token:
        Checked before every attempt and every sleep.
    retryable_patterns:
        Substrings that mark an error as transient.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 5.0
    cancel_token: CancellationToken | None = None
    retryable_patterns: tuple[str, ...] = field(
        default_factory=lambda: RETRYABLE_ERROR_PATTERNS,
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")


def is_retryable(
    error: BaseException,
    patterns: tuple[str, ...] = RETRYABLE_ERROR_PATTERNS,
) -> bool:
    """Classify *error* as transient by message and class-name substrings."""
    if isinstance(error, _NEVER_RETRY):
        return False
    if not isinstance(error, Exception):
        return False
    haystack = " ".join(
        [str(error)] + [cls.__name__ for cls in type(error).__mro__]
    ).lower()
    return any(p.lower() in haystack for p in patterns)


def compute_delay(
    attempt: int,
    options: RetryOptions,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay after the 0-indexed *attempt*: exponential, +/-25% jitter, capped."""
    base = options.initial_delay * (2 ** attempt)
    jitter = base * _JITTER * (2 * rand() - 1)
    return max(0.0, min(base + jitter, options.max_delay))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    on_retry: Callable[[BaseException, int, float], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> T:
    """Run *operation*, retrying transient failures.

    Non-retryable errors propagate on first occurrence.  After the last
    attempt the final error propagates unchanged.  ``on_retry`` receives
    ``(error, next_attempt_number, delay)`` before each sleep.
    """
    options = options or RetryOptions()
    token = options.cancel_token
    if sleep is None:
        sleep = token.sleep if token is not None else asyncio.sleep

    attempt = 0
    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e, options.retryable_patterns):
                raise
            if attempt + 1 >= options.max_attempts:
                _logger.warning(
                    "Giving up after %d attempts: %s", attempt + 1, e,
                )
                raise
            delay = compute_delay(attempt, options)
            _logger.warning(
                "Transient error (attempt %d/%d), retrying in %.2fs: %s",
                attempt + 1, options.max_attempts, delay, e,
            )
            if on_retry is not None:
                result = on_retry(e, attempt + 2, delay)
                if asyncio.iscoroutine(result):
                    await result

        if token is not None:
            token.raise_if_cancelled()
        await sleep(delay)
        attempt += 1
