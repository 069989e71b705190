"""
Comfy Remote - Retry Utilities
===============================

Retry patterns using the tenacity library.

Provides:
- Retry with exponential backoff + jitter for sync callables
- Async retry for httpx calls against the render backend

Submission and upload are deliberately *not* wrapped: a retried POST /prompt
could queue the same job twice. Downloads and local store writes are safe
to repeat.

Usage:
    from comfy_remote.retry import retry_async, retry_with_backoff

    @retry_async(exceptions=(httpx.TransportError,))
    async def download():
        ...

    @retry_with_backoff(exceptions=(OSError,))
    def write_file():
        ...
"""

import functools
import logging
from collections.abc import Callable
from typing import TypeVar, Union

import tenacity
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_exponential_jitter,
)

from .config import settings
from .exceptions import RetryExhaustedError
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "retry_with_backoff",
    "retry_async",
]

T = TypeVar("T")
ExceptionTypes = Union[type[Exception], tuple[type[Exception], ...]]


def _wait_strategy(backoff_base: float, backoff_max: float, jitter: bool):
    if jitter:
        return wait_exponential_jitter(
            initial=backoff_base,
            max=backoff_max,
            jitter=backoff_max / 2,
        )
    return wait_exponential(multiplier=backoff_base, max=backoff_max)


def retry_with_backoff(
    max_attempts: int | None = None,
    backoff_base: float | None = None,
    backoff_max: float | None = None,
    jitter: bool | None = None,
    exceptions: ExceptionTypes = Exception,
) -> Callable:
    """
    Decorator for retry with exponential backoff and optional jitter.

    Args:
        max_attempts: Maximum number of attempts (default from settings)
        backoff_base: Base for exponential backoff (default from settings)
        backoff_max: Maximum backoff time (default from settings)
        jitter: Add randomness to prevent thundering herd (default from settings)
        exceptions: Exception types to catch and retry

    Raises:
        RetryExhaustedError: wrapping the last error once attempts run out

    Example:
        @retry_with_backoff(max_attempts=3, exceptions=(OSError,))
        def persist():
            ...
    """
    _max_attempts = max_attempts or settings.retry.max_retries
    _backoff_base = backoff_base or settings.retry.backoff_base
    _backoff_max = backoff_max or settings.retry.backoff_max
    _jitter = jitter if jitter is not None else settings.retry.backoff_jitter

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        retry_decorator = retry(
            stop=stop_after_attempt(_max_attempts),
            wait=_wait_strategy(_backoff_base, _backoff_max, _jitter),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, log_level=logging.INFO),
        )
        retrying = retry_decorator(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            try:
                return retrying(*args, **kwargs)
            except tenacity.RetryError as e:
                raise RetryExhaustedError(
                    message=f"All {_max_attempts} retry attempts exhausted for {func.__name__}",
                    attempts=_max_attempts,
                    last_error=e.last_attempt.exception() if e.last_attempt else None,
                ) from e

        return wrapper

    return decorator


def retry_async(
    max_attempts: int | None = None,
    backoff_base: float | None = None,
    backoff_max: float | None = None,
    jitter: bool | None = None,
    exceptions: ExceptionTypes = Exception,
) -> Callable:
    """
    Async-compatible retry decorator (tenacity has native coroutine support).

    The last exception is re-raised unchanged once attempts run out.

    Example:
        @retry_async(max_attempts=3, exceptions=(httpx.TransportError,))
        async def fetch_bytes():
            ...
    """
    _max_attempts = max_attempts or settings.retry.max_retries
    _backoff_base = backoff_base or settings.retry.backoff_base
    _backoff_max = backoff_max or settings.retry.backoff_max
    _jitter = jitter if jitter is not None else settings.retry.backoff_jitter

    def decorator(func):
        return retry(
            stop=stop_after_attempt(_max_attempts),
            wait=_wait_strategy(_backoff_base, _backoff_max, _jitter),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, log_level=logging.INFO),
            reraise=True,
        )(func)

    return decorator
