"""
Retry for idempotent collaborator reads such as the upstream model list.

Chat-completion calls are never retried here; their failures are forwarded
to the client.
"""

import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Optional

from shared.errors import UpstreamError
from shared.logging import get_logger

RETRYABLE_UPSTREAM_STATUSES = frozenset({429, 500, 502, 503, 504})


class RetryConfig:
    """Exponential backoff settings."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.5,
                 max_delay: float = 5.0,
                 jitter: bool = True):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def is_transient(exc: BaseException) -> bool:
    """Upstream replies are retried only when throttled or failing server-side."""
    if isinstance(exc, UpstreamError):
        return exc.status_code in RETRYABLE_UPSTREAM_STATUSES
    return True


def retry_on_exception(exceptions: tuple = (Exception,),
                       config: Optional[RetryConfig] = None,
                       retry_if: Callable[[BaseException], bool] = is_transient) -> Callable:
    """Decorator for retrying async functions on exceptions.

    Exceptions outside ``exceptions``, and those ``retry_if`` declines,
    propagate unchanged after the first attempt.
    """

    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            logger = get_logger(f"retry.{func.__name__}")

            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 1:
                        logger.info("Retry succeeded", attempt=attempt, function=func.__name__)
                    return result

                except exceptions as e:
                    if not retry_if(e):
                        raise
                    if attempt == config.max_attempts:
                        logger.error(
                            "All retry attempts exhausted",
                            attempt=attempt,
                            max_attempts=config.max_attempts,
                            function=func.__name__,
                            error=str(e)
                        )
                        raise RetryError(
                            f"Function {func.__name__} failed after {config.max_attempts} attempts",
                            last_exception=e,
                            attempts=config.max_attempts
                        ) from e

                    delay = backoff_delay(attempt, config)
                    logger.warning(
                        "Retry attempt failed, waiting before next attempt",
                        attempt=attempt,
                        delay=delay,
                        function=func.__name__,
                        error=str(e)
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("retry loop exited without result")  # pragma: no cover

        return wrapper

    return decorator


def backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential delay before the next attempt, capped at ``max_delay``."""
    delay = min(config.base_delay * (2 ** (attempt - 1)), config.max_delay)
    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)
    return max(0.0, delay)
