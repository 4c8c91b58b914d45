"""Bounded exponential-backoff retries for async calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from chatsync.core.logging import Logger

__all__ = [
    "RetryPolicy",
    "Sleep",
    "call_with_retry",
]

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

_BACKOFF_MULTIPLIER = 2.0
_BACKOFF_CAP = 30.0


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry budget for one kind of external call.

    ``retries`` counts additional attempts after the first one. Each attempt
    is bounded by ``timeout`` seconds when set; a timeout counts as a
    transient failure.

    Example:
        >>> policy = RetryPolicy(retries=3, backoff=1.0)
        >>> [policy.delay(attempt) for attempt in (1, 2, 3)]
        [1.0, 2.0, 4.0]
    """

    retries: int
    backoff: float
    timeout: float | None = None

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.backoff < 0:
            raise ValueError("backoff must be >= 0")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive when provided")

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def delay(self, attempt: int) -> float:
        """Return the pause after failed attempt number ``attempt``."""

        value = self.backoff * (_BACKOFF_MULTIPLIER ** (attempt - 1))
        return min(value, _BACKOFF_CAP)


def _always(_: BaseException) -> bool:
    return True


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    logger: Logger,
    event: str,
    retryable: Callable[[BaseException], bool] = _always,
    sleep: Sleep = asyncio.sleep,
    **context: Any,
) -> T:
    """Await ``operation`` until it succeeds or the policy is exhausted.

    Exceptions rejected by ``retryable`` propagate immediately; the last
    exception propagates once all attempts fail.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            if policy.timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=policy.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            is_timeout = isinstance(exc, (asyncio.TimeoutError, TimeoutError))
            if attempt >= policy.attempts or not (is_timeout or retryable(exc)):
                raise
            delay = policy.delay(attempt)
            logger.warning(
                event,
                attempt=attempt,
                max_attempts=policy.attempts,
                retry_delay=delay,
                error_type=exc.__class__.__name__,
                error=str(exc),
                **context,
            )
            await sleep(delay)
