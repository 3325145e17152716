"""
Retry utilities with exception-aware handling.

Uses the exception hierarchy to make retry decisions:
- Transient errors: retry with exponential (or fixed) backoff
- Permanent errors: fail immediately (no retry)
- Circuit open: fail immediately

The sync and async decorators share one bookkeeping object, so both log
and classify identically; only the sleep differs.
"""

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps

from core.errors.exceptions import (
    PipelineError,
    ThrottlingError,
    classify_exception,
    wrap_exception,
)

# Import ErrorCategory from core.types to avoid circular dependency
from core.types import ErrorCategory

logger = logging.getLogger(__name__)

_MESSAGE_LIMIT = 200


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    # Equal jitter on top of the computed delay; off for fixed backoff
    jitter: bool = True

    # If True, don't retry permanent errors even if max_attempts > 0
    respect_permanent: bool = True

    # If True, use retry_after from ThrottlingError when available
    respect_retry_after: bool = True

    # Exception types that are always / never retried, ahead of classification
    always_retry: set[type[Exception]] = field(default_factory=set)
    never_retry: set[type[Exception]] = field(default_factory=set)

    @classmethod
    def fixed(cls, max_attempts: int, delay: float, **kwargs) -> "RetryConfig":
        """Constant delay between attempts (no growth, no jitter)."""
        return cls(
            max_attempts=max_attempts,
            base_delay=delay,
            max_delay=delay,
            exponential_base=1.0,
            jitter=False,
            **kwargs,
        )

    @property
    def is_fixed(self) -> bool:
        return self.exponential_base == 1.0 and not self.jitter

    def server_delay(self, error: Exception | None) -> float | None:
        """Delay requested by the server (S3 SlowDown with Retry-After), if honoured."""
        if self.respect_retry_after and isinstance(error, ThrottlingError) and error.retry_after:
            return min(error.retry_after, self.max_delay)
        return None

    def get_delay(self, attempt: int, error: Exception | None = None) -> float:
        """
        Calculate the delay before the next attempt.

        Args:
            attempt: 0-indexed attempt number
            error: Optional exception to check for retry_after

        Returns:
            Delay in seconds
        """
        requested = self.server_delay(error)
        if requested is not None:
            return requested

        delay = self.base_delay * (self.exponential_base**attempt)
        if self.jitter:
            # Equal jitter: half fixed, half random
            delay = (delay / 2) + random.uniform(0, delay / 2)
        return min(delay, self.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """True if another attempt should follow attempt (0-indexed)."""
        if attempt >= self.max_attempts - 1:
            return False

        if self.never_retry and isinstance(error, tuple(self.never_retry)):
            return False
        if self.always_retry and isinstance(error, tuple(self.always_retry)):
            return True

        if isinstance(error, PipelineError):
            return error.is_retryable

        category = classify_exception(error)
        if self.respect_permanent and category == ErrorCategory.PERMANENT:
            return False
        return category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.AUTH,
            ErrorCategory.UNKNOWN,
        )


# Default configurations
DEFAULT_RETRY = RetryConfig(max_attempts=3, base_delay=1.0)

# Object storage: SDK already retries at the HTTP layer, keep ours short
S3_RETRY = RetryConfig(max_attempts=4, base_delay=2.0, max_delay=30.0)

# Relational store: connection drops and deadlocks
DB_RETRY = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0)


class _RetryLoop:
    """Per-call bookkeeping shared by with_retry and with_retry_async."""

    def __init__(
        self,
        operation: str,
        config: RetryConfig,
        wrap_errors: bool,
        wrap_as: type[PipelineError],
    ):
        self.operation = operation
        self.config = config
        self.wrap_errors = wrap_errors
        self.wrap_as = wrap_as

    @property
    def attempts(self) -> range:
        return range(max(1, self.config.max_attempts))

    def succeeded(self, attempt: int) -> None:
        if attempt == 0:
            return
        logger.info(
            "Retry succeeded for %s after %d attempts",
            self.operation,
            attempt + 1,
            extra={
                "operation": self.operation,
                "attempt": attempt + 1,
                "max_attempts": self.config.max_attempts,
            },
        )

    def failed(self, error: Exception, attempt: int) -> float:
        """
        Decide what happens after a failed attempt.

        Returns:
            Seconds to sleep before the next attempt

        Raises:
            The wrapped error (or the original when wrapping is off) once no
            further attempt is allowed
        """
        wrapped = error
        if self.wrap_errors and not isinstance(error, PipelineError):
            wrapped = wrap_exception(error, default_class=self.wrap_as)

        category = (
            wrapped.category if isinstance(wrapped, PipelineError) else classify_exception(wrapped)
        ).value
        extra = {
            "operation": self.operation,
            "attempt": attempt + 1,
            "max_attempts": self.config.max_attempts,
            "error_type": type(wrapped).__name__,
            "error_category": category,
            "error_message": str(error)[:_MESSAGE_LIMIT],
        }

        if not self.config.should_retry(wrapped, attempt):
            # never_retry types are terminal by declaration; the caller reports them
            declared = bool(self.config.never_retry) and isinstance(wrapped, tuple(self.config.never_retry))
            if declared:
                logger.debug("Not retrying %s: %s", self.operation, type(wrapped).__name__, extra=extra)
            elif isinstance(wrapped, PipelineError) and not wrapped.is_retryable:
                logger.warning("Permanent error for %s, not retrying", self.operation, extra=extra)
            else:
                logger.error("Max retries exhausted for %s", self.operation, extra=extra)
            if wrapped is not error:
                raise wrapped from error
            raise error

        delay = self.config.get_delay(attempt, wrapped)
        if self.config.server_delay(wrapped) is not None:
            extra["delay_source"] = "server"
        elif self.config.is_fixed:
            extra["delay_source"] = "fixed"
        else:
            extra["delay_source"] = "exponential_backoff"
        extra["delay_seconds"] = round(delay, 2)

        logger.warning("Retryable error for %s, will retry", self.operation, extra=extra)
        return delay


def with_retry(
    config: RetryConfig | None = None,
    wrap_errors: bool = True,
    wrap_as: type[PipelineError] = PipelineError,
):
    """
    Decorator for retrying blocking functions with classified backoff.

    Args:
        config: Retry configuration (defaults to DEFAULT_RETRY)
        wrap_errors: If True, wrap foreign exceptions into the PipelineError hierarchy
        wrap_as: PipelineError subclass used for unclassified wrapped errors

    Usage:
        @with_retry(config=S3_RETRY)
        def download_file(self, bucket, key, dest):
            ...
    """
    config = config or DEFAULT_RETRY

    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            loop = _RetryLoop(func.__name__, config, wrap_errors, wrap_as)
            for attempt in loop.attempts:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    time.sleep(loop.failed(e, attempt))
                    continue
                loop.succeeded(attempt)
                return result

        return wrapper

    return decorator


def with_retry_async(
    config: RetryConfig | None = None,
    wrap_errors: bool = True,
    wrap_as: type[PipelineError] = PipelineError,
):
    """
    Async version of with_retry. Uses asyncio.sleep() so other tasks keep
    running while a probe batch waits out its delay.
    """
    config = config or DEFAULT_RETRY

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            loop = _RetryLoop(func.__name__, config, wrap_errors, wrap_as)
            for attempt in loop.attempts:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    await asyncio.sleep(loop.failed(e, attempt))
                    continue
                loop.succeeded(attempt)
                return result

        return wrapper

    return decorator


__all__ = [
    "RetryConfig",
    "with_retry",
    "with_retry_async",
    "DEFAULT_RETRY",
    "S3_RETRY",
    "DB_RETRY",
]
