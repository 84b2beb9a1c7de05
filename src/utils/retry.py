"""
Retry decorator with exponential backoff for database reads

Provides resilient retry logic for transient failures with:
- Exponential backoff (base 2.0)
- Jitter to prevent thundering herd
- Configurable max retries
- Exception filtering by type or by predicate
- Callback support for metrics integration

Usage:
    from src.utils.retry import retry_database_operation

    @retry_database_operation(max_retries=3, base_delay=0.5)
    def read_batch(cursor, query, params):
        cursor.execute(query, params)
        return cursor.fetchall()
"""

import logging
import random
import time
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
):
    """
    Decorator that retries a function with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter of +/-25% to each delay (default: True)
        retryable_exceptions: Tuple of exception types to retry (default: all exceptions)
        should_retry: Predicate deciding whether a raised exception is retryable
        on_retry: Callback function(attempt, exception, delay) called on each retry

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(
            max_retries=5,
            retryable_exceptions=(ConnectionError, TimeoutError),
        )
        def open_connection():
            return driver.connect(**params)
    """
    def decorator(func: Callable) -> Callable:
        func_name = getattr(func, '__name__', 'function')

        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except Exception as e:
                    retryable = (
                        (retryable_exceptions is None or isinstance(e, retryable_exceptions))
                        and (should_retry is None or should_retry(e))
                    )
                    if not retryable:
                        logger.error(
                            f"Non-retryable exception in {func_name}: {type(e).__name__}: {e}"
                        )
                        raise

                    if attempt == max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded for {func_name}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = min(base_delay * (exponential_base ** attempt), max_delay)
                    if jitter:
                        jitter_amount = delay * 0.25
                        delay = max(0.1, delay + random.uniform(-jitter_amount, jitter_amount))

                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries} failed for {func_name}: "
                        f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                    )

                    if on_retry:
                        try:
                            on_retry(attempt + 1, e, delay)
                        except Exception as callback_error:
                            logger.error(f"Error in retry callback: {callback_error}")

                    time.sleep(delay)

            raise RuntimeError(f"Unexpected error in retry logic for {func_name}")

        return wrapper
    return decorator


def is_retryable_db_exception(exception: Exception) -> bool:
    """
    Determine if a database exception is transient

    Matches connection loss, timeouts, lock wait timeouts and deadlocks by
    exception type name and message, since every driver spells them
    differently.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    exception_str = str(exception).lower()
    exception_type = type(exception).__name__.lower()

    retryable_patterns = [
        "connection",
        "timeout",
        "deadlock",
        "lock wait timeout",
        "lost connection",
        "server has gone away",
        "can't connect",
        "unable to connect",
        "broken pipe",
        "network error",
        "communication link failure",
    ]

    for pattern in retryable_patterns:
        if pattern in exception_str or pattern in exception_type:
            return True

    return exception_type in (
        "connectionerror",
        "timeouterror",
        "operationalerror",
        "interfaceerror",
    )


def retry_database_operation(
    max_retries: int = 3,
    base_delay: float = 1.0,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
):
    """
    Convenience decorator for database operations with smart exception filtering

    Only retries on transient database errors (connection, timeout, deadlock, etc.)
    Non-retryable errors (syntax errors, missing tables) fail immediately.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        on_retry: Callback function(attempt, exception, delay) called on each retry
    """
    return retry_with_backoff(
        max_retries=max_retries,
        base_delay=base_delay,
        should_retry=is_retryable_db_exception,
        on_retry=on_retry,
    )
