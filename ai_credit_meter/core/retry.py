"""
Bounded retry for provider calls.

Only ProviderTransientError is retried. Waits grow as base_delay * 2^attempt.
A CancelToken aborts the loop between attempts and interrupts backoff sleeps.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import OperationCancelled, ProviderTransientError, ProviderUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for upstream calls."""
    max_retries: int = 3  # total attempts, including the first
    base_delay_ms: int = 1000
    timeout_seconds: float = 60.0  # per attempt

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


class CancelToken:
    """Cancellation flag shared between a caller and a running operation."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled by caller")

    def sleep(self, seconds: float) -> None:
        """Sleep, waking early and raising if cancelled meanwhile."""
        if self._event.wait(seconds):
            raise OperationCancelled("Operation cancelled by caller")


def call_with_retry(
    operation: Callable[[int], T],
    policy: RetryPolicy,
    cancel: Optional[CancelToken] = None,
) -> T:
    """Run operation until it succeeds, fails permanently, or attempts run out.

    Args:
        operation: Called with the 1-based attempt number
        policy: Attempt count and backoff settings
        cancel: Optional token checked before each attempt and while sleeping

    Returns:
        The operation's result

    Raises:
        ProviderUnavailable: If every attempt failed transiently
        OperationCancelled: If the token was cancelled
        Any non-transient exception raised by the operation, unchanged
    """
    token = cancel or CancelToken()
    retrying = Retrying(
        stop=stop_after_attempt(policy.max_retries),
        wait=wait_exponential(multiplier=policy.base_delay_ms / 1000, min=0),
        retry=retry_if_exception_type(ProviderTransientError),
        sleep=token.sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    try:
        for attempt in retrying:
            with attempt:
                token.raise_if_cancelled()
                return operation(attempt.retry_state.attempt_number)
    except RetryError as exc:
        last = exc.last_attempt.exception()
        raise ProviderUnavailable(
            f"Provider unavailable after {policy.max_retries} attempts: {last}",
            attempts=policy.max_retries,
            last_error=last,
        ) from last
    raise AssertionError("unreachable")
