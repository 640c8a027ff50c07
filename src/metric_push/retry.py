"""Generic retry-with-backoff policy.

One ``RetryPolicy`` object describes how many attempts a call gets, how
long to wait between attempts, and which exceptions are worth retrying.
The metrics client and the webhook client both run their HTTP calls
through a policy so neither embeds its own sleep loop.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff(step_s: float) -> Callable[[int], float]:
    """Backoff that waits ``attempt * step_s`` seconds after attempt N."""

    def _delay(attempt: int) -> float:
        return attempt * step_s

    return _delay


def exponential_backoff(
    initial_s: float, max_s: float
) -> Callable[[int], float]:
    """Backoff that doubles per attempt, capped at *max_s*."""

    def _delay(attempt: int) -> float:
        return min(initial_s * (2 ** (attempt - 1)), max_s)

    return _delay


def _retry_all(exc: Exception) -> bool:
    return True


@dataclass
class RetryPolicy:
    """Retry a callable with a configurable backoff.

    Args:
        name: Label used in log messages (e.g. 'webhook', 'query_range').
        max_attempts: Total attempts, including the first one.
        backoff: Maps the 1-based attempt that just failed to a delay in
            seconds.
        retryable: Predicate deciding whether an exception is retried.
            Non-retryable exceptions propagate immediately.
        sleep_fn: Sleep function (injected in tests).
    """

    name: str = "call"
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: linear_backoff(2.0))
    retryable: Callable[[Exception], bool] = _retry_all
    sleep_fn: Callable[[float], None] = time.sleep

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call ``func(*args, **kwargs)`` until it succeeds or attempts run out.

        Returns:
            Whatever *func* returns on its first successful call.

        Raises:
            The last exception raised by *func* when every attempt failed,
            or the first non-retryable exception.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                if not self.retryable(exc):
                    raise
                if attempt >= attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s", self.name, attempt, exc
                    )
                    raise
                delay = self.backoff(attempt)
                logger.info(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    self.name,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                if delay > 0:
                    self.sleep_fn(delay)
        raise AssertionError("unreachable")  # pragma: no cover
