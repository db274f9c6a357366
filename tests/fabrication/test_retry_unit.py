"""Unit tests for bounded transient retry."""

import asyncio

import pytest
from hypothesis import given, strategies as st

from src.fabrication.errors import (
    AccessDeniedError,
    ExternalPermanentError,
    ExternalTransientError,
    RateLimitError,
)
from src.fabrication.retry import NO_RETRY, RetryPolicy, retry_transient


def run_async(coro):
    return asyncio.run(coro)


class FlakyOperation:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryTransient:
    def test_success_without_retry(self, instant_sleep):
        operation = FlakyOperation()
        result = run_async(
            retry_transient(operation, RetryPolicy(), "read", sleep=instant_sleep)
        )
        assert result == "ok"
        assert operation.calls == 1

    def test_transient_failures_are_retried(self, instant_sleep):
        operation = FlakyOperation(
            ExternalTransientError("timeout"),
            ExternalTransientError("502"),
        )
        result = run_async(
            retry_transient(
                operation,
                RetryPolicy(max_retries=3, base_delay=0.01),
                "read",
                sleep=instant_sleep,
            )
        )
        assert result == "ok"
        assert operation.calls == 3

    def test_exhausted_retries_raise_last_error_with_context(self, instant_sleep):
        errors = [ExternalTransientError(f"failure {n}") for n in range(3)]
        operation = FlakyOperation(*errors)

        with pytest.raises(ExternalTransientError) as exc_info:
            run_async(
                retry_transient(
                    operation,
                    RetryPolicy(max_retries=2, base_delay=0.01),
                    "poll",
                    context={"external_run_id": 42},
                    sleep=instant_sleep,
                )
            )

        assert exc_info.value is errors[-1]
        assert exc_info.value.context["attempts"] == 3
        assert exc_info.value.context["external_run_id"] == 42
        assert operation.calls == 3

    @pytest.mark.parametrize(
        "error",
        [
            AccessDeniedError("denied", repository="acme/secret"),
            ExternalPermanentError("not found", status_code=404),
            ValueError("bug"),
        ],
    )
    def test_non_transient_errors_propagate_immediately(self, error, instant_sleep):
        operation = FlakyOperation(error)

        with pytest.raises(type(error)):
            run_async(retry_transient(operation, RetryPolicy(), "read", sleep=instant_sleep))
        assert operation.calls == 1

    def test_no_retry_policy_tries_once(self, instant_sleep):
        operation = FlakyOperation(ExternalTransientError("timeout"))

        with pytest.raises(ExternalTransientError):
            run_async(retry_transient(operation, NO_RETRY, "read", sleep=instant_sleep))
        assert operation.calls == 1

    def test_rate_limit_waits_retry_after(self):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        operation = FlakyOperation(RateLimitError("slow down", retry_after=7))
        run_async(
            retry_transient(
                operation,
                RetryPolicy(max_retries=1, max_delay=30.0),
                "read",
                sleep=record_sleep,
            )
        )
        assert delays == [7.0]


class TestBackoff:
    @given(attempt=st.integers(min_value=0, max_value=20))
    def test_backoff_is_bounded(self, attempt):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert 0 <= policy.backoff(attempt) <= 5.0

    def test_rate_limit_delay_is_capped(self):
        policy = RetryPolicy(max_delay=10.0)
        error = RateLimitError("slow down", retry_after=3600)
        assert policy.delay_for(error, 0) == 10.0
