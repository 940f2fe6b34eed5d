"""Shared retry policy for external provider calls.

Every LLM and embedding call goes through ``with_retry(policy, operation)``
so backoff behaviour is defined once. Built on tenacity's ``Retrying``
controller with a policy-driven wait strategy:

- exponential backoff from ``base_delay_sec`` by ``backoff_multiplier``
- an extra ``rate_limit_multiplier`` when the error looks like a 429
- random jitter, with the final delay capped at ``max_delay_sec``
- non-retryable errors are re-raised on the first attempt
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import Executor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, replace
from typing import Callable, Optional, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from src.common.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("429", "rate limit", "resource exhausted", "resource_exhausted", "quota")
TRANSIENT_MARKERS = ("500", "502", "503", "504", "timeout", "timed out", "unavailable", "deadline exceeded")


class ProviderError(Exception):
    """Base for errors raised by provider clients.

    Provider clients classify their own failures, so a ProviderError is
    retried only when it is also a TransientError. Message text is not
    inspected.
    """


class TransientError(Exception):
    """Raised by provider clients for failures worth retrying."""


class RateLimitError(TransientError):
    """Raised when a provider rejects a call because of rate limiting."""


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, RateLimitError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def is_transient_error(error: BaseException) -> bool:
    """Default classifier: rate limits, timeouts, connection drops and 5xx."""
    if isinstance(error, (TransientError, TimeoutError, FuturesTimeoutError, ConnectionError)):
        return True
    if isinstance(error, ProviderError):
        return False
    if is_rate_limit_error(error):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings plus the classifiers deciding what gets retried."""

    max_attempts: int = 5
    base_delay_sec: float = 1.0
    backoff_multiplier: float = 2.0
    rate_limit_multiplier: float = 2.0
    max_delay_sec: float = 10.0
    jitter_sec: float = 0.25
    is_retryable: Callable[[BaseException], bool] = is_transient_error
    is_rate_limited: Callable[[BaseException], bool] = is_rate_limit_error

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_sec=config.base_delay_sec,
            backoff_multiplier=config.backoff_multiplier,
            rate_limit_multiplier=config.rate_limit_multiplier,
            max_delay_sec=config.max_delay_sec,
        )

    def with_overrides(self, **changes) -> "RetryPolicy":
        return replace(self, **changes)

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay in seconds before retrying after the given (1-based) attempt."""
        delay = self.base_delay_sec * (self.backoff_multiplier ** max(attempt - 1, 0))
        if error is not None and self.is_rate_limited(error):
            delay *= self.rate_limit_multiplier
        if self.jitter_sec > 0:
            delay += random.uniform(0, self.jitter_sec)
        return min(delay, self.max_delay_sec)


class wait_policy(wait_base):
    """tenacity wait strategy delegating to a RetryPolicy."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy

    def __call__(self, retry_state) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self.policy.compute_delay(retry_state.attempt_number, error)


def with_retry(
    policy: RetryPolicy,
    operation: Callable[[], T],
    *,
    description: str = "provider call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` under ``policy``; the last error is re-raised."""

    def _before_sleep(retry_state) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            "Retrying after transient error",
            extra={
                "operation": description,
                "attempt": retry_state.attempt_number,
                "max_attempts": policy.max_attempts,
                "rate_limited": policy.is_rate_limited(error),
                "error": str(error),
            },
        )

    retrying = Retrying(
        sleep=sleep,
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_policy(policy),
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=_before_sleep,
        reraise=True,
    )
    return retrying(operation)


def run_with_timeout(executor: Executor, operation: Callable[[], T], timeout_sec: float) -> T:
    """Run ``operation`` on ``executor`` and wait at most ``timeout_sec`` for it.

    The clock starts when a worker picks the call up, so time spent queued
    behind other calls never counts against the timeout.

    Raises:
        concurrent.futures.TimeoutError: If the call runs longer than ``timeout_sec``.
    """
    started = threading.Event()

    def _run() -> T:
        started.set()
        return operation()

    future = executor.submit(_run)
    started.wait()
    try:
        return future.result(timeout=timeout_sec)
    except FuturesTimeoutError:
        future.cancel()
        raise
