"""
Retry policies for exchange calls.

A retry policy is an explicit value: attempt budget, bounded backoff and a
predicate that separates retryable failures from fatal ones. The executor
returns a typed ``RetryOutcome`` instead of re-raising, so callers branch on
the outcome status rather than on exception control flow.
"""

import asyncio
import inspect
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from risk_engine.core.logger import get_module_logger


class BackoffType(Enum):
    """Enumeration of supported backoff types."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


def _always_retry(exception: Exception) -> bool:
    return True


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry policies.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Base delay in seconds for backoff calculations
        max_delay: Upper bound on any single delay
        backoff_type: Type of backoff strategy to use
        jitter_enabled: Whether to add random jitter to delays
        jitter_max: Maximum jitter fraction (0.0 to 1.0)
        attempt_timeout: Per-attempt timeout in seconds for coroutine
            functions, None for no timeout
        is_retryable: Predicate deciding whether an exception may be retried
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 1.0
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    jitter_enabled: bool = True
    jitter_max: float = 0.1
    attempt_timeout: Optional[float] = 10.0
    is_retryable: Callable[[Exception], bool] = field(default=_always_retry)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0.0 <= self.jitter_max <= 1.0:
            raise ValueError("jitter_max must be between 0.0 and 1.0")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be positive")


class RetryStatus(Enum):
    """Terminal status of a retried call."""

    SUCCEEDED = "succeeded"
    FATAL = "fatal"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RetryOutcome:
    """
    Typed result of a retried call.

    Attributes:
        status: How the call ended
        value: Return value when status is SUCCEEDED
        error: Last exception for FATAL or EXHAUSTED
        attempts: Number of attempts actually made
        elapsed: Seconds spent including backoff sleeps
    """

    status: RetryStatus
    value: Any = None
    error: Optional[Exception] = None
    attempts: int = 0
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == RetryStatus.SUCCEEDED


class IRetryPolicy(ABC):
    """Interface for retry policy implementations."""

    @property
    @abstractmethod
    def max_attempts(self) -> int:
        """Total attempts allowed."""

    @abstractmethod
    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay after a failed attempt.

        Args:
            attempt: Number of the attempt that just failed (1-based)

        Returns:
            float: Delay in seconds before the next attempt
        """

    @abstractmethod
    def is_retryable(self, exception: Exception) -> bool:
        """Return True if the exception class may be retried."""

    @property
    @abstractmethod
    def attempt_timeout(self) -> Optional[float]:
        """Per-attempt timeout in seconds."""


class RetryPolicy(IRetryPolicy):
    """Configurable retry policy with exponential, linear or fixed backoff."""

    def __init__(self, config: RetryConfig) -> None:
        self._config = config

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    @property
    def attempt_timeout(self) -> Optional[float]:
        return self._config.attempt_timeout

    def calculate_delay(self, attempt: int) -> float:
        if self._config.backoff_type == BackoffType.EXPONENTIAL:
            delay = self._config.base_delay * (2 ** (attempt - 1))
        elif self._config.backoff_type == BackoffType.LINEAR:
            delay = self._config.base_delay * attempt
        else:  # FIXED
            delay = self._config.base_delay

        delay = min(delay, self._config.max_delay)

        if self._config.jitter_enabled and delay > 0:
            jitter_amount = delay * self._config.jitter_max
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = min(max(0.0, delay), self._config.max_delay)

        return delay

    def is_retryable(self, exception: Exception) -> bool:
        return bool(self._config.is_retryable(exception))


class RetryExecutor:
    """
    Executes callables under a retry policy.

    Only exceptions the policy classifies as retryable are retried; anything
    else ends the call immediately with a FATAL outcome. Cancellation is never
    swallowed.
    """

    def __init__(self, policy: IRetryPolicy) -> None:
        self._policy = policy
        self._logger = get_module_logger("retry")

    @property
    def policy(self) -> IRetryPolicy:
        return self._policy

    async def execute_async(
        self, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> RetryOutcome:
        """
        Execute a coroutine function, or a blocking function in a worker thread.

        The policy's attempt timeout bounds coroutine functions only.

        Args:
            func: Callable to execute
            *args: Positional arguments for function
            **kwargs: Keyword arguments for function

        Returns:
            RetryOutcome: SUCCEEDED, FATAL or EXHAUSTED
        """
        start_time = time.monotonic()
        max_attempts = self._policy.max_attempts
        timeout = self._policy.attempt_timeout

        for attempt in range(1, max_attempts + 1):
            try:
                if inspect.iscoroutinefunction(func):
                    call = func(*args, **kwargs)
                    if timeout is not None:
                        call = asyncio.wait_for(call, timeout=timeout)
                else:
                    # A worker thread cannot be cancelled; blocking calls run
                    # to completion and rely on their own I/O timeouts.
                    call = asyncio.to_thread(func, *args, **kwargs)
                value = await call

                if attempt > 1:
                    self._logger.info(f"Call succeeded on attempt {attempt}")
                return RetryOutcome(
                    status=RetryStatus.SUCCEEDED,
                    value=value,
                    attempts=attempt,
                    elapsed=time.monotonic() - start_time,
                )

            except asyncio.TimeoutError:
                error: Exception = TimeoutError(f"Attempt timed out after {timeout}s")
            except Exception as e:
                error = e

            outcome = self._after_failure(attempt, error, start_time)
            if outcome is not None:
                return outcome

            delay = self._policy.calculate_delay(attempt)
            self._logger.debug(
                f"Retrying in {delay:.2f}s (attempt {attempt + 1}/{max_attempts})"
            )
            if delay > 0:
                await asyncio.sleep(delay)

        raise RuntimeError("Retry executor completed without an outcome")

    def execute_sync(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> RetryOutcome:
        """
        Execute a blocking function with retry logic.

        Returns:
            RetryOutcome: SUCCEEDED, FATAL or EXHAUSTED
        """
        start_time = time.monotonic()
        max_attempts = self._policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                value = func(*args, **kwargs)
                if attempt > 1:
                    self._logger.info(f"Call succeeded on attempt {attempt}")
                return RetryOutcome(
                    status=RetryStatus.SUCCEEDED,
                    value=value,
                    attempts=attempt,
                    elapsed=time.monotonic() - start_time,
                )
            except Exception as e:
                outcome = self._after_failure(attempt, e, start_time)
                if outcome is not None:
                    return outcome

            delay = self._policy.calculate_delay(attempt)
            if delay > 0:
                time.sleep(delay)

        raise RuntimeError("Retry executor completed without an outcome")

    def _after_failure(
        self, attempt: int, error: Exception, start_time: float
    ) -> Optional[RetryOutcome]:
        elapsed = time.monotonic() - start_time
        self._logger.warning(
            f"Attempt {attempt} failed after {elapsed:.2f}s: {type(error).__name__}: {error}"
        )

        if not self._policy.is_retryable(error):
            self._logger.error(f"Not retrying non-retryable {type(error).__name__}")
            return RetryOutcome(
                status=RetryStatus.FATAL, error=error, attempts=attempt, elapsed=elapsed
            )

        if attempt >= self._policy.max_attempts:
            self._logger.error(
                f"All {attempt} attempts failed. Last error: {type(error).__name__}: {error}"
            )
            return RetryOutcome(
                status=RetryStatus.EXHAUSTED, error=error, attempts=attempt, elapsed=elapsed
            )

        return None


def create_exchange_retry_policy(
    max_retries: int = 2,
    base_delay: float = 0.1,
    max_delay: float = 1.0,
    is_retryable: Optional[Callable[[Exception], bool]] = None,
    attempt_timeout: Optional[float] = 10.0,
) -> RetryPolicy:
    """
    Factory for the exchange-call retry policy.

    Args:
        max_retries: Retries after the first attempt
        base_delay: Initial backoff in seconds
        max_delay: Backoff ceiling in seconds
        is_retryable: Retryable-error predicate
        attempt_timeout: Per-attempt timeout in seconds

    Returns:
        RetryPolicy: Exponential backoff policy with jitter
    """
    if max_retries < 0:
        raise ValueError("max_retries must be non-negative")

    return RetryPolicy(
        RetryConfig(
            max_attempts=max_retries + 1,
            base_delay=base_delay,
            max_delay=max_delay,
            backoff_type=BackoffType.EXPONENTIAL,
            jitter_enabled=True,
            jitter_max=0.1,
            attempt_timeout=attempt_timeout,
            is_retryable=is_retryable or _always_retry,
        )
    )
