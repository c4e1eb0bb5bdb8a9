"""Tenacity-based retry utilities for history persistence.

Agent invocations are never retried automatically; only short, transient
filesystem failures while writing run history are.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Log retry attempts for debugging."""
    logger.warning(
        "Retry attempt %d after %.2fs (exception: %s)",
        retry_state.attempt_number,
        retry_state.seconds_since_start or 0.0,
        retry_state.outcome.exception() if retry_state.outcome else "unknown",
    )


def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
    retry_exceptions: tuple[type[Exception], ...] = (OSError,),
) -> Callable:
    """
    Create a tenacity retry decorator with exponential backoff and jitter.

    Args:
        max_attempts: Maximum number of attempts.
        min_wait: Backoff multiplier in seconds.
        max_wait: Maximum wait time cap in seconds.
        retry_exceptions: Tuple of exception types to retry on.

    Returns:
        A tenacity retry decorator. The last exception is re-raised.
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(multiplier=min_wait, max=max_wait),
        retry=retry_if_exception_type(retry_exceptions),
        before_sleep=log_retry_attempt,
        reraise=True,
    )


# Transient write failures (e.g. a locked file on Windows during replace)
retry_io = create_retry_decorator()
