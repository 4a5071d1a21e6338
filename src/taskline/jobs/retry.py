"""Retry delay computation."""

from __future__ import annotations

from enum import Enum

# Used when a queue has no retry policy configured
DEFAULT_RETRY_BASE_DELAY = 5


class RetryStrategy(str, Enum):
    """How the delay grows between retries.

    For a base delay of 60 seconds:
    - FIXED: 60s, 60s, 60s
    - LINEAR: 60s, 120s, 180s
    - EXPONENTIAL: 60s, 120s, 240s
    """

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def compute_retry_delay(
    attempts: int,
    strategy: RetryStrategy | None = None,
    base_delay: int | None = None,
) -> int:
    """Return the delay in seconds before the next attempt.

    Args:
        attempts: Attempts made so far, including the one that just failed
        strategy: Retry strategy (None falls back to exponential)
        base_delay: Base delay in seconds (None falls back to 5 seconds)

    Returns:
        Delay in seconds
    """
    attempts = max(attempts, 1)

    if strategy is None or base_delay is None:
        return 2 ** (attempts - 1) * DEFAULT_RETRY_BASE_DELAY

    if strategy == RetryStrategy.FIXED:
        return base_delay
    if strategy == RetryStrategy.LINEAR:
        return attempts * base_delay
    return 2 ** (attempts - 1) * base_delay
