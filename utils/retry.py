"""Retry helper with bounded exponential backoff."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryError(RuntimeError):
    """Raised once every attempt of a retried call has failed."""

    def __init__(self, message: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def backoff_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(initial_delay * (2 ** (attempt - 1)), max_delay)


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    retryable: Callable[[BaseException], bool] = lambda _exc: True,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds, retrying up to ``max_retries`` extra times.

    Non-retryable errors are re-raised immediately. When the retry budget is
    exhausted a :class:`RetryError` wrapping the last failure is raised.
    """
    attempts = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            attempts += 1
            if not retryable(exc):
                raise
            if attempts > max_retries:
                raise RetryError(
                    f"Failed after {attempts} attempts: {exc}",
                    attempts=attempts,
                    last_error=exc,
                ) from exc
            delay = backoff_delay(attempts, initial_delay, max_delay)
            logger.warning("Attempt %d failed (%s); retrying in %.2fs", attempts, exc, delay)
            sleep(delay)
