"""
Resilience Utilities for Service Bus clients

Timeout handling and retry with exponential backoff for transient faults.

Author: LocalBus Team
Date: 2026-03-09
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import OperationTimeoutError, is_transient_error
from .logging_utils import StructuredLogger


logger = StructuredLogger('localbus.servicebus.resilience')

T = TypeVar('T')


# ========== Configuration ==========

class OperationType(str, Enum):
    """Operation types with different timeout configurations."""
    SEND = "send"
    RECEIVE = "receive"
    ADMIN = "admin"
    LOCK = "lock"
    SESSION = "session"


class TimeoutConfig:
    """Timeout configuration for different operation types."""

    # Default timeouts in seconds
    DEFAULTS = {
        OperationType.SEND: 30.0,
        OperationType.RECEIVE: 60.0,
        OperationType.ADMIN: 30.0,
        OperationType.LOCK: 10.0,
        OperationType.SESSION: 60.0,
    }

    @classmethod
    def get_timeout(cls, operation_type: OperationType) -> float:
        return cls.DEFAULTS.get(operation_type, 60.0)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff retry settings, named after the SDK client options.

    Attributes:
        total: Retries after the first attempt (0 disables retrying)
        backoff_factor: Delay before the first retry, in seconds
        backoff_max: Upper bound on any single delay, in seconds
    """
    total: int = 3
    backoff_factor: float = 0.8
    backoff_max: float = 120.0

    def __post_init__(self):
        if self.total < 0:
            raise ValueError("retry total cannot be negative")
        if self.backoff_factor < 0 or self.backoff_max < 0:
            raise ValueError("retry backoff values cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(self.backoff_factor * (2 ** (attempt - 1)), self.backoff_max)


DEFAULT_RETRY_POLICY = RetryPolicy()


# ========== Timeout Handling ==========

def with_timeout(
    operation_type: OperationType,
    timeout_seconds: Optional[float] = None
):
    """
    Decorator to add timeout handling to async functions.

    Usage:
        @with_timeout(OperationType.ADMIN)
        async def create_queue(...):
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            timeout = timeout_seconds or TimeoutConfig.get_timeout(operation_type)
            operation_name = func.__name__

            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
            except asyncio.TimeoutError:
                error = OperationTimeoutError(operation=operation_name, timeout_seconds=timeout)
                logger.error(
                    f"Operation timeout: {operation_name}",
                    operation_name=operation_name,
                    timeout_seconds=timeout,
                    error_type=type(error).__name__
                )
                raise error

        return wrapper
    return decorator


# ========== Retry Logic ==========

async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    operation_name: Optional[str] = None,
    retry_on: Optional[Callable[[Exception], bool]] = None,
    **kwargs: Any
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient failures.

    Non-transient errors propagate immediately. After ``policy.total``
    retries the last error propagates.
    """
    policy = policy or DEFAULT_RETRY_POLICY
    operation_name = operation_name or getattr(func, '__name__', 'operation')
    attempts = policy.total + 1

    for attempt in range(1, attempts + 1):
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            should_retry = retry_on(e) if retry_on else is_transient_error(e)

            if not should_retry or attempt >= attempts:
                if should_retry:
                    logger.error(
                        f"Operation failed after {attempt} attempts: {operation_name}",
                        operation_name=operation_name,
                        attempt=attempt,
                        max_attempts=attempts,
                        error_type=type(e).__name__,
                        error_message=str(e)
                    )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                f"Operation failed, retrying: {operation_name}",
                operation_name=operation_name,
                attempt=attempt,
                max_attempts=attempts,
                error_type=type(e).__name__,
                error_message=str(e),
                retry_delay_seconds=delay
            )
            await asyncio.sleep(delay)
            continue

        if attempt > 1:
            logger.info(
                f"Operation succeeded after {attempt} attempts: {operation_name}",
                operation=operation_name,
                attempt=attempt,
                total_attempts=attempts
            )
        return result

    raise AssertionError("unreachable")


def with_retry(
    policy: Optional[RetryPolicy] = None,
    retry_on: Optional[Callable[[Exception], bool]] = None
):
    """
    Decorator to add retry logic with exponential backoff.

    Methods of objects carrying a ``retry_policy`` attribute use that policy
    unless one is passed explicitly.

    Usage:
        @with_retry()
        async def send_messages(self, ...):
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            effective = policy
            if effective is None and args:
                effective = getattr(args[0], 'retry_policy', None)
            return await retry_async(
                func,
                *args,
                policy=effective,
                operation_name=func.__name__,
                retry_on=retry_on,
                **kwargs
            )
        return wrapper
    return decorator
