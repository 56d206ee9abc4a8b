"""Retry policy implementation for the deployment orchestrator.

This module provides retry logic with exponential backoff for handling
transient failures in provider calls. It distinguishes between retryable
errors (rate limits, throttling, eventual-consistency lag) and non-retryable
errors (invalid specs, quota exhaustion, authorization failures).

The retry system supports:
- Exponential, linear, and constant backoff strategies
- Configurable max attempts and delay bounds
- Error code-based retry decisions
- Structured logging of retry attempts
"""

import time
import logging
from typing import Callable, TypeVar, Optional
from dataclasses import dataclass

from src.providers.base import (
    BackoffStrategy,
    PermanentError,
    RetryPolicy,
    TransientError,
    ValidationError,
)


logger = logging.getLogger(__name__)


T = TypeVar('T')


# Common retryable error codes
RETRYABLE_ERROR_CODES = {
    # Cloud API throttling
    'RATE_LIMITED',
    'THROTTLED',
    'REQUEST_LIMIT_EXCEEDED',

    # Eventual consistency
    'EVENTUAL_CONSISTENCY',
    'RESOURCE_NOT_READY',
    'DEPENDENCY_NOT_READY',

    # Network and API errors
    'API_TIMEOUT',
    'API_UNAVAILABLE',
    'NETWORK_ERROR',
    'CONNECTION_TIMEOUT',
    'SERVICE_UNAVAILABLE',

    # Cluster control plane / registry
    'CONTROL_PLANE_UNAVAILABLE',
    'REGISTRY_THROTTLED',
    'BUILDER_UNAVAILABLE',
}


# Non-retryable error codes (deterministic failures)
NON_RETRYABLE_ERROR_CODES = {
    # Validation errors
    'INVALID_SPEC',
    'DEPENDENCY_CYCLE',
    'MISSING_DEPENDENCY',
    'UNKNOWN_SERVICE',

    # Account and permission errors
    'ACCESS_DENIED',
    'QUOTA_EXCEEDED',
    'INVALID_CREDENTIALS',

    # Build errors
    'BUILD_FAILED',
    'IMAGE_NOT_FOUND',

    # Logic errors
    'UNSUPPORTED_OPERATION',
    'OPERATION_TIMEOUT',
}


@dataclass
class RetryContext:
    """Mutable record of a retried call, filled in by execute_with_retry.

    Attributes:
        name: Name of the call being retried
        attempt: Number of attempts made so far
        last_error: Last error encountered
        total_delay: Total delay accumulated across retries
    """
    name: str
    attempt: int = 0
    last_error: Optional[Exception] = None
    total_delay: float = 0.0


def calculate_backoff_delay(
    attempt: int,
    strategy: BackoffStrategy,
    base_delay: float,
    max_delay: float
) -> float:
    """Calculate backoff delay for retry attempt.

    Args:
        attempt: Current attempt number (0-indexed)
        strategy: Backoff strategy to use
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds, capped at max_delay

    Examples:
        >>> calculate_backoff_delay(0, BackoffStrategy.EXPONENTIAL, 1.0, 60.0)
        1.0
        >>> calculate_backoff_delay(2, BackoffStrategy.EXPONENTIAL, 1.0, 60.0)
        4.0
        >>> calculate_backoff_delay(10, BackoffStrategy.EXPONENTIAL, 1.0, 60.0)
        60.0
    """
    if strategy == BackoffStrategy.EXPONENTIAL:
        delay = base_delay * (2 ** attempt)
    elif strategy == BackoffStrategy.LINEAR:
        delay = base_delay * (attempt + 1)
    else:  # CONSTANT
        delay = base_delay

    return min(delay, max_delay)


def is_retryable_error(error: Exception, retry_policy: RetryPolicy) -> bool:
    """Determine if an error is retryable based on retry policy.

    Args:
        error: Exception to check
        retry_policy: Retry policy with retryable error codes

    Returns:
        True if error should be retried, False otherwise

    Logic:
        1. PermanentError and ValidationError never retry
        2. Errors without an error_code never retry
        3. Codes in NON_RETRYABLE_ERROR_CODES never retry
        4. TransientError always retries
        5. Otherwise check the policy's retryable_errors, falling back to
           RETRYABLE_ERROR_CODES when the policy lists none
    """
    if isinstance(error, (PermanentError, ValidationError)):
        return False

    error_code = getattr(error, 'error_code', None)
    if error_code is None:
        return False

    if error_code in NON_RETRYABLE_ERROR_CODES:
        return False

    if isinstance(error, TransientError):
        return True

    if retry_policy.retryable_errors:
        return error_code in retry_policy.retryable_errors

    return error_code in RETRYABLE_ERROR_CODES


def execute_with_retry(
    func: Callable[[], T],
    retry_policy: RetryPolicy,
    context_name: str = "operation",
    context: Optional[RetryContext] = None,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """Execute a function with retry logic.

    Args:
        func: Function to execute (should take no arguments)
        retry_policy: Retry policy to apply
        context_name: Name for logging context
        context: Optional RetryContext updated with attempts and delays
        sleep: Sleep function, replaceable in tests

    Returns:
        Result of successful function execution

    Raises:
        Exception: Last exception if all retries exhausted or error is not retryable
    """
    ctx = context or RetryContext(name=context_name)
    max_attempts = max(1, retry_policy.max_attempts)

    for attempt in range(max_attempts):
        ctx.attempt = attempt + 1
        try:
            result = func()

            if attempt > 0:
                logger.info(
                    f"{context_name} succeeded on attempt {attempt + 1} "
                    f"after {ctx.total_delay:.2f}s total delay"
                )

            return result

        except Exception as e:
            ctx.last_error = e

            is_last_attempt = (attempt == max_attempts - 1)
            should_retry = (
                not is_last_attempt
                and is_retryable_error(e, retry_policy)
            )

            if not should_retry:
                error_code = getattr(e, 'error_code', 'UNKNOWN')
                if is_last_attempt and max_attempts > 1:
                    logger.error(
                        f"{context_name} failed after {max_attempts} attempts: {error_code}"
                    )
                else:
                    logger.error(
                        f"{context_name} failed with non-retryable error: {error_code}"
                    )
                raise

            delay = calculate_backoff_delay(
                attempt,
                retry_policy.backoff_strategy,
                retry_policy.base_delay_seconds,
                retry_policy.max_delay_seconds
            )
            ctx.total_delay += delay

            error_code = getattr(e, 'error_code', 'UNKNOWN')
            logger.warning(
                f"{context_name} failed with {error_code}, "
                f"retrying in {delay:.2f}s (attempt {attempt + 2}/{max_attempts})"
            )

            sleep(delay)

    # Unreachable: the loop either returns or raises
    raise ctx.last_error
