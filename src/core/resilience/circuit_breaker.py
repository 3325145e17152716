"""
Latching circuit breaker for known-unrecoverable remote operations.

Protects against scenarios like:
- An SSH key rejected by the probe host (every further call would fail the same way)
- Credentials revoked for the rest of a run

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Tripped, calls rejected immediately for the lifetime of the breaker

Unlike a half-open breaker there is no automatic recovery: a tripped breaker
stays open for the lifetime of the instance. Breakers are owned by the
component that uses them and passed by reference, so tests construct
isolated instances.

Usage:
    breaker = CircuitBreaker("existence_probe")
    try:
        result = await breaker.call_async(lambda: run_probe(paths))
    except CircuitOpenError:
        return None  # silently skipped for the rest of the run

    # Or trip explicitly on a failure recognised by the caller
    if breaker.trip("ssh publickey rejected"):
        ...  # first trip only
"""

import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from core.errors.exceptions import CircuitOpenError
from core.types import ErrorCategory

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    # Error categories that trip the circuit when raised through call_async
    trip_categories: tuple = (ErrorCategory.PERMANENT, ErrorCategory.AUTH)


PROBE_CIRCUIT_CONFIG = CircuitBreakerConfig(
    trip_categories=(ErrorCategory.PERMANENT, ErrorCategory.AUTH),
)


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    tripped_at: float | None = None
    trip_reason: str | None = None
    current_state: str = "closed"


def _category_of(exc: Exception) -> ErrorCategory:
    if hasattr(exc, "category") and isinstance(exc.category, ErrorCategory):
        return exc.category
    return ErrorCategory.UNKNOWN


class CircuitBreaker:
    """One-way circuit breaker with an atomic check-and-set trip. Thread-safe."""

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()

        self._state = CircuitState.CLOSED
        self._stats = CircuitStats()
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def stats(self) -> CircuitStats:
        """Get copy of current statistics."""
        with self._lock:
            return CircuitStats(
                total_calls=self._stats.total_calls,
                successful_calls=self._stats.successful_calls,
                failed_calls=self._stats.failed_calls,
                rejected_calls=self._stats.rejected_calls,
                tripped_at=self._stats.tripped_at,
                trip_reason=self._stats.trip_reason,
                current_state=self._state.value,
            )

    def trip(self, reason: str, exc: Exception | None = None) -> bool:
        """
        Open the circuit.

        Returns True only for the call that performed the CLOSED -> OPEN
        transition; concurrent or later callers get False and nothing is
        logged for them.
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                return False
            self._state = CircuitState.OPEN
            self._stats.tripped_at = time.time()
            self._stats.trip_reason = reason
            self._stats.current_state = CircuitState.OPEN.value

        logger.error(
            "Circuit open for the rest of the run: circuit_name=%s, reason=%s",
            self.name,
            reason,
            extra={
                "circuit_name": self.name,
                "circuit_state": CircuitState.OPEN.value,
                "error_type": type(exc).__name__ if exc else None,
                "error_message": str(exc)[:200] if exc else reason,
            },
        )
        return True

    async def call_async(self, func: Callable[[], Awaitable[T]]) -> T:
        with self._lock:
            self._stats.total_calls += 1
            if self._state == CircuitState.OPEN:
                self._stats.rejected_calls += 1
                raise CircuitOpenError(self.name)

        # Execute outside lock
        try:
            result = await func()
        except Exception as e:
            with self._lock:
                self._stats.failed_calls += 1
            if _category_of(e) in self.config.trip_categories:
                self.trip(str(e)[:200] or type(e).__name__, exc=e)
            raise

        with self._lock:
            self._stats.successful_calls += 1
        return result

    def get_diagnostics(self) -> dict:
        stats = self.stats
        return {
            "name": self.name,
            "state": stats.current_state,
            "trip_reason": stats.trip_reason,
            "stats": {
                "total_calls": stats.total_calls,
                "successful_calls": stats.successful_calls,
                "failed_calls": stats.failed_calls,
                "rejected_calls": stats.rejected_calls,
            },
        }


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
    "PROBE_CIRCUIT_CONFIG",
]
