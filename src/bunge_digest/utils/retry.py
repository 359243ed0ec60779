"""Retry utilities with exponential backoff for transient errors.

Retry behaviour is described by an explicit :class:`RetryPolicy` passed in by
the caller, so each stage's policy comes from configuration and can be tested
without running the stage.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ..exceptions import RateLimitedError
from .retryable_errors import get_retry_reason, is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy.

    Attributes:
        max_attempts: Total attempts including the first call (>= 1)
        base_delay: Delay in seconds before the second attempt
        max_delay: Upper bound on any single delay
        jitter: Fraction of the delay randomised (0 disables jitter)
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got: {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must be non-negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0 and 1, got: {self.jitter}")

    def compute_delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay to sleep after failed attempt number ``attempt`` (1-based).

        Doubles from ``base_delay`` and caps at ``max_delay``. Jitter scales
        the delay by a factor in ``[1 - jitter, 1 + jitter]`` and the result
        is capped again.
        """
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 1.0 + self.jitter * (2.0 * rng() - 1.0)
        return max(0.0, min(delay, self.max_delay))


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=0.0)


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    before_attempt: Optional[Callable[[], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Call ``func`` under ``policy``, retrying transient failures.

    Args:
        func: Zero-argument callable performing one attempt
        policy: Backoff policy
        description: Label used in log messages
        is_retryable: Classifier deciding whether a failure may be retried
        before_attempt: Hook run before every attempt; raising from it stops
            the loop (used for run deadlines)
        sleep: Sleep function (injectable for tests)
        rng: Random source for jitter (injectable for tests)

    Returns:
        Result of the first successful call

    Raises:
        Exception: The non-retryable exception, or the last exception once
            attempts are exhausted
    """
    attempt = 0
    while True:
        attempt += 1
        if before_attempt is not None:
            before_attempt()
        try:
            return func()
        except Exception as exc:
            if not is_retryable(exc):
                logger.debug("%s failed with non-retryable error: %s", description, exc)
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s: all %d attempts failed. Last error: %s",
                    description,
                    policy.max_attempts,
                    exc,
                )
                raise
            delay = policy.compute_delay(attempt, rng)
            if isinstance(exc, RateLimitedError) and exc.retry_after:
                delay = max(delay, min(exc.retry_after, policy.max_delay))
            logger.warning(
                "%s: attempt %d/%d failed (%s). Retrying in %.1fs...",
                description,
                attempt,
                policy.max_attempts,
                get_retry_reason(exc),
                delay,
            )
            sleep(delay)
