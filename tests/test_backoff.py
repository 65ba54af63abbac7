"""Tests for the retry policy evaluator."""

from __future__ import annotations

import httpx
import pytest

from knowrithm.backoff import (
    ErrorCategory,
    RetryPolicy,
    RetryState,
    categorize_error,
    is_transient_transport_error,
)
from knowrithm.config import RetryConfig


class TestComputeDelay:
    """Tests for exponential delay computation."""

    @pytest.mark.parametrize(
        ("base", "multiplier", "attempt", "expected"),
        [
            (1000, 1.5, 0, 1000),
            (1000, 1.5, 1, 1500),
            (1000, 1.5, 2, 2250),
            (1000, 2.0, 3, 8000),
            (250, 1.0, 5, 250),
            (100, 1.5, 3, 338),
        ],
    )
    def test_exponential_growth(self, base, multiplier, attempt, expected):
        policy = RetryPolicy(base_delay_ms=base, multiplier=multiplier)
        assert policy.compute_delay(attempt) == expected

    def test_zero_base_delay_never_waits(self):
        """A zero base delay disables waiting for every attempt."""
        policy = RetryPolicy(base_delay_ms=0, multiplier=3.0)
        assert [policy.compute_delay(k) for k in range(5)] == [0, 0, 0, 0, 0]

    def test_delay_is_integer_milliseconds(self):
        policy = RetryPolicy(base_delay_ms=333, multiplier=1.1)
        delay = policy.compute_delay(4)
        assert isinstance(delay, int)
        assert delay == round(333 * 1.1**4)


class TestPolicyValidation:
    """Tests for policy invariants."""

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)

    def test_rejects_negative_delay(self):
        with pytest.raises(ValueError, match="base_delay_ms"):
            RetryPolicy(base_delay_ms=-1)

    def test_rejects_shrinking_multiplier(self):
        with pytest.raises(ValueError, match="multiplier"):
            RetryPolicy(multiplier=0.5)

    def test_statuses_coerced_to_frozenset(self):
        policy = RetryPolicy(retryable_statuses={503, 504})
        assert policy.retryable_statuses == frozenset({503, 504})

    def test_from_config(self):
        config = RetryConfig(
            max_retries=5,
            retry_delay_ms=200,
            backoff_multiplier=2.0,
            retryable_status_codes=[429],
        )
        policy = RetryPolicy.from_config(config)
        assert policy.max_attempts == 5
        assert policy.base_delay_ms == 200
        assert policy.multiplier == 2.0
        assert policy.retryable_statuses == frozenset({429})


class TestOverrides:
    """Tests for per-call override merging."""

    def test_no_overrides_returns_same_policy(self):
        policy = RetryPolicy()
        assert policy.with_overrides() is policy

    def test_only_given_fields_change(self):
        policy = RetryPolicy(max_attempts=3, base_delay_ms=1000, multiplier=1.5)
        updated = policy.with_overrides(max_attempts=6, retryable_statuses=[500])
        assert updated.max_attempts == 6
        assert updated.base_delay_ms == 1000
        assert updated.multiplier == 1.5
        assert updated.retryable_statuses == frozenset({500})
        assert policy.max_attempts == 3

    def test_attempts_clamped_to_one(self):
        assert RetryPolicy().with_overrides(max_attempts=0).max_attempts == 1


class TestRetryDecisions:
    """Tests for retry decisions on statuses and transport failures."""

    def test_retryable_status_within_budget(self):
        policy = RetryPolicy(max_attempts=3)
        assert policy.should_retry_status(503, 0)
        assert policy.should_retry_status(503, 1)
        assert not policy.should_retry_status(503, 2)

    def test_non_retryable_status(self):
        policy = RetryPolicy(max_attempts=3)
        assert not policy.should_retry_status(404, 0)
        assert not policy.should_retry_status(400, 0)

    def test_single_attempt_never_retries(self):
        policy = RetryPolicy(max_attempts=1)
        assert not policy.should_retry_status(503, 0)
        assert not policy.should_retry_error(httpx.ConnectError("refused"), 0)

    def test_timeouts_and_connection_errors_retry(self):
        policy = RetryPolicy(max_attempts=2)
        assert policy.should_retry_error(httpx.ReadTimeout("slow"), 0)
        assert policy.should_retry_error(httpx.ConnectError("refused"), 0)
        assert not policy.should_retry_error(httpx.ReadTimeout("slow"), 1)

    def test_other_errors_follow_status_set(self):
        policy = RetryPolicy(max_attempts=3)
        error = ValueError("unexpected")
        assert not policy.should_retry_error(error, 0)
        assert policy.should_retry_error(error, 0, status=502)
        assert not policy.should_retry_error(error, 0, status=401)

    def test_custom_transport_predicate(self):
        policy = RetryPolicy(is_transport_error_retryable=lambda error: False)
        assert not policy.should_retry_error(httpx.ConnectError("refused"), 0)


class TestCategorizeError:
    """Tests for transport error categorization."""

    def test_timeouts(self):
        assert categorize_error(httpx.ConnectTimeout("t")) == ErrorCategory.TIMEOUT
        assert categorize_error(httpx.ReadTimeout("t")) == ErrorCategory.TIMEOUT
        assert categorize_error(httpx.PoolTimeout("t")) == ErrorCategory.TIMEOUT

    def test_connection_errors(self):
        assert categorize_error(httpx.ConnectError("c")) == ErrorCategory.CONNECTION
        assert categorize_error(httpx.RemoteProtocolError("c")) == ErrorCategory.CONNECTION
        assert categorize_error(ConnectionResetError()) == ErrorCategory.CONNECTION

    def test_status_errors(self):
        request = httpx.Request("GET", "https://api.test/x")
        response = httpx.Response(500, request=request)
        error = httpx.HTTPStatusError("boom", request=request, response=response)
        assert categorize_error(error) == ErrorCategory.HTTP_STATUS
        assert not is_transient_transport_error(error)

    def test_unknown(self):
        assert categorize_error(KeyError("x")) == ErrorCategory.UNKNOWN


class TestRetryState:
    def test_records_retries(self):
        state = RetryState()
        state.record_retry("HTTP 503", 1000)
        state.record_retry("HTTP 503", 1500)
        assert state.errors == ["HTTP 503", "HTTP 503"]
        assert state.total_delay_ms == 2500
        assert state.elapsed >= 0
