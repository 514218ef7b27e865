"""
Retry decorator with exponential backoff for coroutines.

LLM and embedding collaborators fail transiently (rate limits, timeouts).
Provider SDKs are blocking, so callers run them in a thread and wrap the
coroutine; asyncio.sleep between attempts keeps cancellation prompt.

Usage:
    from graphkeeper.utils.retry import async_retry_with_exponential_backoff, is_retryable_error

    @async_retry_with_exponential_backoff(max_retries=3, retry_condition=is_retryable_error)
    async def call_llm():
        return await asyncio.to_thread(provider.create_message, ...)
"""

import asyncio
import logging
from functools import wraps
from typing import Callable, Optional, Tuple, Type

from .security import sanitize_error

logger = logging.getLogger(__name__)


def _backoff_delay(attempt: int, base_delay: float, backoff_factor: float, max_delay: float) -> float:
    return min(base_delay * (backoff_factor ** attempt), max_delay)


def async_retry_with_exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_condition: Optional[Callable[[Exception], bool]] = None
):
    """
    Decorator for exponential backoff retry logic on coroutines.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 2.0)
        max_delay: Maximum delay cap in seconds (default: 60.0)
        backoff_factor: Multiplier for delay on each retry (default: 2.0)
        exceptions: Tuple of exception types to retry (default: all exceptions)
        retry_condition: Optional function(exception) -> bool to decide if retry

    Raises:
        Original exception after max_retries exhausted
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.warning(
                            f"Coroutine '{func.__name__}' failed after {max_retries} retries. Giving up."
                        )
                        raise
                    if retry_condition and not retry_condition(e):
                        raise

                    delay = _backoff_delay(attempt, base_delay, backoff_factor, max_delay)
                    logger.warning(
                        f"Coroutine '{func.__name__}' failed (attempt {attempt + 1}/{max_retries}). "
                        f"Retrying in {delay:.1f}s... Error: {type(e).__name__}: {sanitize_error(e)[:100]}"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


def is_rate_limit_error(exception: Exception) -> bool:
    """
    Check if exception is a rate limit error.

    Examples:
        >>> is_rate_limit_error(Exception("429 Rate Limit"))
        True

        >>> is_rate_limit_error(Exception("Connection timeout"))
        False
    """
    error_str = str(exception).lower()
    error_type = type(exception).__name__.lower()

    rate_limit_indicators = ["rate", "429", "quota", "overloaded"]
    if any(indicator in error_str for indicator in rate_limit_indicators):
        return True

    return "ratelimit" in error_type or "quota" in error_type


def is_timeout_error(exception: Exception) -> bool:
    """
    Check if exception is a timeout error.

    Examples:
        >>> is_timeout_error(Exception("Request timeout"))
        True
    """
    error_str = str(exception).lower()
    error_type = type(exception).__name__.lower()

    timeout_indicators = ["timeout", "timed out", "deadline"]
    if any(indicator in error_str for indicator in timeout_indicators):
        return True

    return "timeout" in error_type


def is_retryable_error(exception: Exception) -> bool:
    """Rate limit or timeout: the transient errors worth retrying."""
    return is_rate_limit_error(exception) or is_timeout_error(exception)
