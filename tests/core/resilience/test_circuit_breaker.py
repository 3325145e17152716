"""
Tests for the latching circuit breaker.

Verifies:
- CLOSED -> OPEN transition and no automatic recovery
- Trip is logged exactly once, even under concurrent trips
- Category-based tripping through call_async
- Statistics and diagnostics
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from core.errors.exceptions import PermanentError, ProbeAuthError, TransientError
from core.resilience.circuit_breaker import (
    PROBE_CIRCUIT_CONFIG,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from core.types import ErrorCategory


class CategorizedException(Exception):
    """Plain exception carrying a category attribute."""

    def __init__(self, message: str, category: ErrorCategory):
        super().__init__(message)
        self.category = category


class TestCircuitBreakerState:
    def test_starts_closed(self):
        breaker = CircuitBreaker("probe")
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_closed
        assert not breaker.is_open

    def test_trip_opens(self):
        breaker = CircuitBreaker("probe")
        assert breaker.trip("ssh key rejected") is True
        assert breaker.is_open
        assert breaker.stats.trip_reason == "ssh key rejected"
        assert breaker.stats.tripped_at is not None

    def test_second_trip_returns_false(self):
        breaker = CircuitBreaker("probe")
        assert breaker.trip("first") is True
        assert breaker.trip("second") is False
        assert breaker.stats.trip_reason == "first"

    def test_trip_logged_once(self, caplog):
        breaker = CircuitBreaker("probe")
        with caplog.at_level(logging.ERROR, logger="core.resilience.circuit_breaker"):
            breaker.trip("denied")
            breaker.trip("denied again")
            breaker.trip("and again")

        opens = [r for r in caplog.records if "Circuit open" in r.getMessage()]
        assert len(opens) == 1

    def test_concurrent_trips_single_winner(self):
        breaker = CircuitBreaker("probe")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda i: breaker.trip(f"t{i}"), range(32)))
        assert results.count(True) == 1


class TestCallAsync:
    @pytest.mark.asyncio
    async def test_success_passes_through(self):
        breaker = CircuitBreaker("probe", PROBE_CIRCUIT_CONFIG)

        async def ok():
            return 42

        assert await breaker.call_async(ok) == 42
        assert breaker.stats.successful_calls == 1

    @pytest.mark.asyncio
    async def test_transient_failure_does_not_trip(self):
        breaker = CircuitBreaker("probe", PROBE_CIRCUIT_CONFIG)

        async def flaky():
            raise TransientError("connection dropped")

        with pytest.raises(TransientError):
            await breaker.call_async(flaky)
        assert breaker.is_closed
        assert breaker.stats.failed_calls == 1

    @pytest.mark.asyncio
    async def test_auth_failure_trips(self):
        breaker = CircuitBreaker("probe", PROBE_CIRCUIT_CONFIG)

        async def denied():
            raise ProbeAuthError("Permission denied (publickey)")

        with pytest.raises(ProbeAuthError):
            await breaker.call_async(denied)
        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_open_rejects_without_calling(self):
        breaker = CircuitBreaker("probe")
        breaker.trip("x")
        func = Mock()

        with pytest.raises(CircuitOpenError):
            await breaker.call_async(func)
        func.assert_not_called()

    @pytest.mark.asyncio
    async def test_category_attribute_on_plain_exception(self):
        breaker = CircuitBreaker("probe")

        async def denied():
            raise CategorizedException("no", ErrorCategory.AUTH)

        with pytest.raises(CategorizedException):
            await breaker.call_async(denied)
        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_custom_trip_categories(self):
        breaker = CircuitBreaker(
            "strict", CircuitBreakerConfig(trip_categories=(ErrorCategory.TRANSIENT,))
        )

        async def permanent():
            raise PermanentError("x")

        with pytest.raises(PermanentError):
            await breaker.call_async(permanent)
        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_stays_open_across_calls(self):
        breaker = CircuitBreaker("probe")

        async def denied():
            raise PermanentError("denied")

        with pytest.raises(PermanentError):
            await breaker.call_async(denied)

        await asyncio.sleep(0)
        for _ in range(3):
            with pytest.raises(CircuitOpenError):
                await breaker.call_async(denied)
        assert breaker.stats.rejected_calls == 3


class TestDiagnostics:
    def test_get_diagnostics(self):
        breaker = CircuitBreaker("probe")
        breaker.trip("denied")
        diag = breaker.get_diagnostics()
        assert diag["name"] == "probe"
        assert diag["state"] == "open"
        assert diag["trip_reason"] == "denied"
        assert diag["stats"]["total_calls"] == 0
