"""
Centralized retry/backoff utilities.

Provides the backoff schedule used by the analysis orchestrator and a
generic async retry helper for transport steps that fail by raising.
"""

import asyncio
import logging
import random
from functools import wraps
from typing import Callable, TypeVar, Sequence, Optional

import httpx

from ai_analysis.core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        jitter_range: Optional[float] = None,
        retryable_exceptions: Sequence[type[Exception]] = (Exception,),
    ):
        """
        Initialize retry configuration.

        Args:
            max_attempts: Maximum number of attempts (including first)
            base_delay: Initial delay between retries in seconds
            max_delay: Maximum delay between retries
            exponential_base: Base for exponential backoff
            jitter: Whether to add random jitter to delays
            jitter_range: Add uniform(0, jitter_range) seconds instead of the
                default +/-25% jitter
            retryable_exceptions: Exception types that trigger retry
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.jitter_range = jitter_range
        self.retryable_exceptions = tuple(retryable_exceptions)

    @property
    def max_retries(self) -> int:
        return max(0, self.max_attempts - 1)


RETRY_FILE_UPLOAD = RetryConfig(
    max_attempts=2,
    base_delay=1.5,
    max_delay=3.0,
    retryable_exceptions=(httpx.TimeoutException, httpx.NetworkError, ConnectionError),
)


def retry_config_from_settings(settings: Settings) -> RetryConfig:
    """Build the orchestrator retry schedule from settings."""
    return RetryConfig(
        max_attempts=settings.MAX_RETRIES + 1,
        base_delay=settings.RETRY_BASE_DELAY,
        max_delay=settings.RETRY_MAX_DELAY,
        jitter_range=settings.RETRY_JITTER_SECONDS,
    )


def calculate_delay(
    attempt: int,
    config: RetryConfig,
) -> float:
    """
    Calculate delay for a given attempt number.

    Args:
        attempt: Zero-based attempt number
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = min(
        config.base_delay * (config.exponential_base ** attempt),
        config.max_delay
    )

    if config.jitter:
        if config.jitter_range is not None:
            delay += random.uniform(0, config.jitter_range)
        else:
            # +/-25% jitter to prevent thundering herd
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


async def retry_async(
    func: Callable[..., T],
    *args,
    config: RetryConfig = RETRY_FILE_UPLOAD,
    operation_name: Optional[str] = None,
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic.

    Raises:
        Last exception if all retries fail
    """
    op_name = operation_name or getattr(func, '__name__', 'operation')
    last_exception: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            last_exception = e

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"{op_name} failed (attempt {attempt + 1}/{config.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}",
                    extra={
                        "event_type": "retry_attempt",
                        "operation": op_name,
                        "attempt": attempt + 1,
                        "max_attempts": config.max_attempts,
                        "delay_seconds": delay,
                        "error_type": type(e).__name__,
                    }
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"{op_name} failed after {config.max_attempts} attempts: {e}",
                    extra={
                        "event_type": "retry_exhausted",
                        "operation": op_name,
                        "attempts": config.max_attempts,
                        "error_type": type(e).__name__,
                    }
                )

    if last_exception is not None:
        raise last_exception
    raise RuntimeError(f"{op_name} failed with no exception captured")


def with_retry(
    config: RetryConfig = RETRY_FILE_UPLOAD,
    operation_name: Optional[str] = None,
):
    """
    Decorator to add retry behavior to async functions.

    Usage:
        @with_retry(config=RETRY_FILE_UPLOAD)
        async def upload(data: bytes) -> str:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_async(
                func, *args,
                config=config,
                operation_name=op_name,
                **kwargs
            )
        return wrapper
    return decorator
