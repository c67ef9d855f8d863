"""
Backoff policy and an async retry decorator.

Retry decisions come from the error categories in core.errors: transient
and unclassified failures are retried, permanent ones are raised at once.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import ParamSpec, TypeVar

from core.errors.exceptions import PipelineError, classify_exception, wrap_exception
from core.types import ErrorCategory

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

# The delay is capped long before this; it only keeps float pow finite
_MAX_EXPONENT = 64


@dataclass
class RetryConfig:
    """
    Exponential backoff with equal jitter.

    Values may arrive as strings from YAML or the environment. A
    max_attempts of None (or zero or less) never gives up, which is what
    the relay wants while the database is down.
    """

    max_attempts: int | None = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    def __post_init__(self):
        if self.max_attempts is not None:
            self.max_attempts = int(self.max_attempts)
            if self.max_attempts <= 0:
                self.max_attempts = None
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)

    def get_delay(self, attempt: int) -> float:
        """
        Seconds to wait after a failed attempt.

        The exponential step is capped at max_delay, then half of it is
        fixed and half random, so delays fall in [step/2, step].

        Args:
            attempt: 0-indexed attempt that just failed
        """
        step = self.base_delay * self.exponential_base ** min(attempt, _MAX_EXPONENT)
        step = min(step, self.max_delay)
        return step / 2 + random.uniform(0, step / 2)

    def attempts_exhausted(self, attempt: int) -> bool:
        """True if attempt (0-indexed) was the last one allowed."""
        return self.max_attempts is not None and attempt >= self.max_attempts - 1

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """True if error is worth another try and attempts remain."""
        if self.attempts_exhausted(attempt):
            return False
        if isinstance(error, PipelineError):
            return error.is_retryable
        return classify_exception(error) is not ErrorCategory.PERMANENT


DEFAULT_RETRY = RetryConfig(max_attempts=3, base_delay=1.0)


def with_retry_async(
    config: RetryConfig | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """
    Retry an async function according to config (DEFAULT_RETRY if omitted).

    Foreign exceptions are wrapped with wrap_exception() before the retry
    decision; the final error is raised with the original as its cause.

    Usage:
        @with_retry_async(config=RetryConfig(max_attempts=5))
        async def get_offsets(self):
            ...
    """
    policy = config or DEFAULT_RETRY

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        operation = func.__name__

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            attempt = 0
            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    error = wrap_exception(e)
                    if not policy.should_retry(error, attempt):
                        _log_giving_up(operation, error, attempt)
                        if error is e:
                            raise
                        raise error from e

                    delay = policy.get_delay(attempt)
                    attempt += 1
                    logger.warning(
                        f"{operation} failed, retrying in {delay:.1f}s: {str(error)[:200]}",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "max_attempts": policy.max_attempts,
                            "delay_seconds": round(delay, 2),
                            "error_category": error.category.value,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue

                if attempt:
                    logger.info(
                        f"{operation} succeeded on attempt {attempt + 1}",
                        extra={"operation": operation, "attempt": attempt + 1},
                    )
                return result

        return wrapper

    return decorator


def _log_giving_up(operation: str, error: PipelineError, attempt: int) -> None:
    reason = "permanent error" if not error.is_retryable else "attempts exhausted"
    logger.error(
        f"{operation} failed ({reason}) after {attempt + 1} attempt(s): {str(error)[:200]}",
        extra={
            "operation": operation,
            "attempt": attempt + 1,
            "error_type": type(error.cause or error).__name__,
            "error_category": error.category.value,
        },
    )


__all__ = [
    "RetryConfig",
    "with_retry_async",
    "DEFAULT_RETRY",
]
