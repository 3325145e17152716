"""
Resilience patterns module.

Provides fault tolerance primitives for the archiver's remote calls.

Components:
    - CircuitBreaker: Latching breaker (closed -> open, explicit reset only)
    - RetryConfig: Exponential or fixed backoff configuration
    - @with_retry / @with_retry_async: Retry decorators with classification
    - wait_with_deadline: Bounded wait over a keyed task set
"""

from .circuit_breaker import (
    PROBE_CIRCUIT_CONFIG,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    CircuitStats,
)
from .deadline import DeadlineResult, wait_with_deadline
from .retry import (
    DB_RETRY,
    DEFAULT_RETRY,
    S3_RETRY,
    RetryConfig,
    with_retry,
    with_retry_async,
)

__all__ = [
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
    "PROBE_CIRCUIT_CONFIG",
    # Deadline
    "DeadlineResult",
    "wait_with_deadline",
    # Retry
    "RetryConfig",
    "with_retry",
    "with_retry_async",
    "DEFAULT_RETRY",
    "S3_RETRY",
    "DB_RETRY",
]
