"""
Retry logic with exponential backoff and bounded readiness polling.
"""

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from adlab.exceptions import (
    AdlabError,
    ExecutorNotAvailableError,
    ReadinessTimeoutError,
    RemoteExecutionError,
    RetryableError,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


def call_with_retry(
    func: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    is_retryable: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[Exception, int, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` until it succeeds, sleeping with exponential backoff between attempts.

    Args:
        func: Zero-argument callable to invoke
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        backoff_factor: Multiplier for delay after each failure (default: 2.0)
        max_delay: Maximum delay between retries (default: 60.0)
        retryable_exceptions: Exception types that may be retried
        is_retryable: Optional predicate further filtering retryable errors;
            errors it rejects propagate immediately
        on_retry: Optional callback called on each retry: (error, attempt, max_attempts)
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever ``func`` returns

    Raises:
        RetryableError: When every attempt failed with a retryable error
    """
    delay = initial_delay
    last_exception = None

    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except retryable_exceptions as e:
            if is_retryable is not None and not is_retryable(e):
                raise
            last_exception = e

            if attempt == max_attempts:
                break

            if on_retry is not None:
                on_retry(e, attempt, max_attempts)

            sleep(min(delay, max_delay))
            delay *= backoff_factor

    assert last_exception is not None  # Always set in the except block
    raise RetryableError(last_exception, max_attempts, max_attempts)


def wait_until(
    predicate: Callable[[], bool],
    description: str,
    timeout: float,
    initial_delay: float = 5.0,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    retryable_exceptions: tuple[type[Exception], ...] = (RemoteExecutionError,),
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> float:
    """
    Poll ``predicate`` until it returns True or ``timeout`` seconds elapse.

    Exceptions listed in ``retryable_exceptions`` count as "not ready yet";
    anything else propagates immediately because it will never succeed.

    Returns:
        Seconds spent waiting

    Raises:
        ReadinessTimeoutError: If the predicate never became true
    """
    start = clock()
    deadline = start + timeout
    delay = initial_delay
    last_error: str | None = None
    attempt = 0

    while True:
        attempt += 1
        try:
            if predicate():
                elapsed = clock() - start
                logger.debug("Ready after %d probe(s), %.1fs: %s", attempt, elapsed, description)
                return elapsed
            last_error = None
        except retryable_exceptions as e:
            last_error = str(e)
            logger.debug("Probe %d for '%s' failed: %s", attempt, description, e)

        remaining = deadline - clock()
        if remaining <= 0:
            raise ReadinessTimeoutError(description, timeout, last_error)

        sleep(min(delay, max_delay, remaining))
        delay *= backoff_factor


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error should be retried.

    Args:
        error: The exception to check

    Returns:
        True if error should be retried

    Retryable errors include:
    - Remote PowerShell failures (guest still booting, service still starting)
    - Network and WinRM transport errors
    - Timeouts

    Configuration, validation and plan errors are never retried.
    """
    if isinstance(error, RetryableError):
        return False

    if isinstance(error, ExecutorNotAvailableError):
        return False

    if isinstance(error, RemoteExecutionError):
        return True

    if isinstance(error, AdlabError):
        return False

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    error_msg = str(error).lower()

    if any(
        keyword in error_msg
        for keyword in [
            "connection",
            "timeout",
            "timed out",
            "network",
            "unreachable",
        ]
    ):
        return True

    # PowerShell Direct while the guest is rebooting
    if any(
        keyword in error_msg
        for keyword in [
            "virtual machine is not running",
            "remote session might have ended",
            "pipeline has been stopped",
        ]
    ):
        return True

    return False


class RetryStrategy:
    """
    Configurable retry strategy for different scenarios.
    """

    # Preset strategies
    AGGRESSIVE = {
        "max_attempts": 5,
        "initial_delay": 0.5,
        "backoff_factor": 1.5,
        "max_delay": 10.0,
    }

    MODERATE = {
        "max_attempts": 3,
        "initial_delay": 1.0,
        "backoff_factor": 2.0,
        "max_delay": 30.0,
    }

    CONSERVATIVE = {
        "max_attempts": 2,
        "initial_delay": 2.0,
        "backoff_factor": 3.0,
        "max_delay": 60.0,
    }

    # Guest reboots and feature installs settle slowly
    REMOTE = {
        "max_attempts": 4,
        "initial_delay": 15.0,
        "backoff_factor": 2.0,
        "max_delay": 120.0,
    }

    @staticmethod
    def apply(strategy_name: str = "MODERATE") -> dict:
        """
        Get retry parameters for a named strategy.

        Args:
            strategy_name: Name of the strategy
                (AGGRESSIVE, MODERATE, CONSERVATIVE, REMOTE)

        Returns:
            Dictionary of retry parameters

        Example:
            params = RetryStrategy.apply("REMOTE")
            call_with_retry(action, **params)
        """
        strategy = getattr(RetryStrategy, strategy_name.upper(), RetryStrategy.MODERATE)
        if not isinstance(strategy, dict):
            strategy = RetryStrategy.MODERATE
        return strategy.copy()
