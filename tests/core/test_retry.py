"""
Unit tests for retry policies and the retry executor.
"""

import asyncio
import time
from unittest.mock import Mock

import pytest

from risk_engine.core.retry import (
    BackoffType,
    RetryConfig,
    RetryExecutor,
    RetryPolicy,
    RetryStatus,
    create_exchange_retry_policy,
)


class Transient(Exception):
    pass


class Fatal(Exception):
    pass


def make_executor(max_attempts=3, attempt_timeout=None):
    return RetryExecutor(
        RetryPolicy(
            RetryConfig(
                max_attempts=max_attempts,
                base_delay=0.0,
                max_delay=0.0,
                jitter_enabled=False,
                attempt_timeout=attempt_timeout,
                is_retryable=lambda e: isinstance(e, (Transient, TimeoutError)),
            )
        )
    )


class TestRetryConfig:
    """Test cases for RetryConfig validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_delay": -1.0},
            {"base_delay": 2.0, "max_delay": 1.0},
            {"jitter_max": 1.5},
            {"attempt_timeout": 0.0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


class TestRetryPolicy:
    """Test cases for backoff calculation."""

    def test_exponential_backoff_capped(self):
        policy = RetryPolicy(RetryConfig(base_delay=0.1, max_delay=0.3, jitter_enabled=False))

        assert policy.calculate_delay(1) == pytest.approx(0.1)
        assert policy.calculate_delay(2) == pytest.approx(0.2)
        assert policy.calculate_delay(3) == pytest.approx(0.3)
        assert policy.calculate_delay(6) == pytest.approx(0.3)

    def test_linear_and_fixed(self):
        linear = RetryPolicy(
            RetryConfig(base_delay=0.1, backoff_type=BackoffType.LINEAR, jitter_enabled=False)
        )
        fixed = RetryPolicy(
            RetryConfig(base_delay=0.1, backoff_type=BackoffType.FIXED, jitter_enabled=False)
        )

        assert linear.calculate_delay(3) == pytest.approx(0.3)
        assert fixed.calculate_delay(3) == pytest.approx(0.1)

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(RetryConfig(base_delay=0.5, max_delay=1.0, jitter_max=0.2))

        for attempt in range(1, 6):
            delay = policy.calculate_delay(attempt)
            assert 0.0 <= delay <= 1.0

    def test_exchange_policy_factory(self):
        policy = create_exchange_retry_policy(max_retries=2, is_retryable=lambda e: False)

        assert policy.max_attempts == 3
        assert not policy.is_retryable(Transient())

        with pytest.raises(ValueError):
            create_exchange_retry_policy(max_retries=-1)


class TestRetryExecutorSync:
    """Test cases for RetryExecutor.execute_sync."""

    def test_success_first_attempt(self):
        func = Mock(return_value=42)

        outcome = make_executor().execute_sync(func, "a", key="b")

        assert outcome.succeeded
        assert outcome.value == 42
        assert outcome.attempts == 1
        func.assert_called_once_with("a", key="b")

    def test_transient_then_success(self):
        func = Mock(side_effect=[Transient("busy"), "ok"])

        outcome = make_executor().execute_sync(func)

        assert outcome.status == RetryStatus.SUCCEEDED
        assert outcome.attempts == 2

    def test_fatal_not_retried(self):
        func = Mock(side_effect=Fatal("rejected"))

        outcome = make_executor().execute_sync(func)

        assert outcome.status == RetryStatus.FATAL
        assert isinstance(outcome.error, Fatal)
        assert func.call_count == 1

    def test_exhausted(self):
        func = Mock(side_effect=Transient("busy"))

        outcome = make_executor(max_attempts=3).execute_sync(func)

        assert outcome.status == RetryStatus.EXHAUSTED
        assert outcome.attempts == 3
        assert func.call_count == 3


class TestRetryExecutorAsync:
    """Test cases for RetryExecutor.execute_async."""

    @pytest.mark.asyncio
    async def test_blocking_function_runs_in_thread(self):
        func = Mock(side_effect=[Transient("busy"), "filled"])

        outcome = await make_executor().execute_async(func, "BTCUSDT")

        assert outcome.succeeded
        assert outcome.value == "filled"
        assert func.call_count == 2

    @pytest.mark.asyncio
    async def test_coroutine_function_awaited(self):
        calls = []

        async def place(pair):
            calls.append(pair)
            if len(calls) == 1:
                raise Transient("busy")
            return "filled"

        outcome = await make_executor().execute_async(place, "ETHUSDT")

        assert outcome.value == "filled"
        assert calls == ["ETHUSDT", "ETHUSDT"]

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_retryable(self):
        async def slow():
            await asyncio.sleep(1.0)

        outcome = await make_executor(max_attempts=2, attempt_timeout=0.01).execute_async(slow)

        assert outcome.status == RetryStatus.EXHAUSTED
        assert isinstance(outcome.error, TimeoutError)
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_blocking_call_not_abandoned_by_timeout(self):
        calls = []

        def slow_order():
            calls.append("sent")
            time.sleep(0.05)
            return "filled"

        outcome = await make_executor(max_attempts=3, attempt_timeout=0.01).execute_async(
            slow_order
        )

        assert outcome.succeeded
        assert outcome.value == "filled"
        assert calls == ["sent"]

    @pytest.mark.asyncio
    async def test_fatal_async(self):
        async def reject():
            raise Fatal("insufficient balance")

        outcome = await make_executor().execute_async(reject)

        assert outcome.status == RetryStatus.FATAL
        assert outcome.attempts == 1
