"""Unit tests for the shared provider retry policy."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError

import pytest

from src.common.config import RetryConfig
from src.common.retry import (
    ProviderError,
    RateLimitError,
    RetryPolicy,
    TransientError,
    is_rate_limit_error,
    is_transient_error,
    run_with_timeout,
    with_retry,
)


class Flaky:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def no_jitter(**changes):
    return RetryPolicy(jitter_sec=0.0).with_overrides(**changes)


def test_transient_errors_are_retried():
    sleeps = []
    operation = Flaky(TransientError("503 unavailable"), TimeoutError("timed out"))

    assert with_retry(no_jitter(), operation, sleep=sleeps.append) == "ok"
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]


def test_non_retryable_errors_raise_immediately():
    sleeps = []
    operation = Flaky(ValueError("bad request"))

    with pytest.raises(ValueError):
        with_retry(no_jitter(), operation, sleep=sleeps.append)
    assert operation.calls == 1
    assert sleeps == []


def test_last_error_is_reraised_after_max_attempts():
    operation = Flaky(*[TransientError("unavailable") for _ in range(5)])

    with pytest.raises(TransientError):
        with_retry(no_jitter(max_attempts=3), operation, sleep=lambda _: None)
    assert operation.calls == 3


def test_rate_limit_multiplies_delay():
    policy = no_jitter()
    assert policy.compute_delay(1, RateLimitError("slow down")) == 2.0
    assert policy.compute_delay(2, RuntimeError("429 Too Many Requests")) == 4.0
    assert policy.compute_delay(2, RuntimeError("503")) == 2.0


def test_delay_is_capped():
    policy = no_jitter(max_delay_sec=3.0)
    assert policy.compute_delay(10) == 3.0
    assert RetryPolicy(jitter_sec=5.0, max_delay_sec=1.0).compute_delay(1) <= 1.0


def test_classifiers():
    assert is_rate_limit_error(RuntimeError("RESOURCE_EXHAUSTED: quota"))
    assert is_transient_error(ConnectionError("reset"))
    assert is_transient_error(RuntimeError("deadline exceeded"))
    assert not is_transient_error(ValueError("invalid argument"))


def test_policy_from_config():
    policy = RetryPolicy.from_config(RetryConfig(max_attempts=2, base_delay_sec=0.5))
    assert policy.max_attempts == 2
    assert policy.base_delay_sec == 0.5
    assert policy.max_delay_sec == 10.0


def test_classified_provider_errors_ignore_message_text():
    class ParseFailure(ProviderError):
        pass

    class Overloaded(ProviderError, TransientError):
        pass

    assert not is_transient_error(ParseFailure("Expecting value: line 1 column 501 (char 500)"))
    assert not is_transient_error(ParseFailure("quota field missing"))
    assert is_transient_error(Overloaded("backend busy"))

    operation = Flaky(ParseFailure("request timeout field invalid"))
    with pytest.raises(ParseFailure):
        with_retry(no_jitter(), operation, sleep=lambda _: None)
    assert operation.calls == 1


def test_run_with_timeout_returns_result_and_raises_on_slow_calls():
    with ThreadPoolExecutor(max_workers=1) as executor:
        assert run_with_timeout(executor, lambda: "ok", timeout_sec=1.0) == "ok"
        with pytest.raises(FuturesTimeoutError):
            run_with_timeout(executor, lambda: time.sleep(0.5), timeout_sec=0.05)


def test_queue_time_does_not_count_against_the_timeout():
    results = []
    lock = threading.Lock()

    def call():
        value = run_with_timeout(shared, lambda: time.sleep(0.05) or "done", timeout_sec=0.5)
        with lock:
            results.append(value)

    with ThreadPoolExecutor(max_workers=1) as shared, ThreadPoolExecutor(max_workers=20) as callers:
        for future in [callers.submit(call) for _ in range(20)]:
            future.result()

    assert results == ["done"] * 20
