"""
Tests for source resilience (circuit breaker, retry, shared in-flight calls).
"""

import asyncio

import httpx
import pytest

from allotrack.services.data_providers.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    RetryExhaustedError,
    SourceGuard,
    retry_async,
)


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


async def no_sleep(delay: float) -> None:
    return None


# =============================================================================
# Circuit Breaker Tests
# =============================================================================


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_initial_state_is_closed(self):
        """Circuit starts in closed state."""
        breaker = CircuitBreaker(name="test")
        assert breaker.state == CircuitState.CLOSED
        assert not breaker.is_open

    def test_opens_after_threshold_failures(self):
        """Circuit opens after reaching failure threshold."""
        breaker = CircuitBreaker(failure_threshold=3, name="test")

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.is_open

    def test_guard_raises_when_open(self):
        """Guard raises CircuitOpenError when circuit is open."""
        breaker = CircuitBreaker(failure_threshold=1, name="exchange")
        breaker.record_failure()

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.guard()
        assert exc_info.value.name == "exchange"
        assert exc_info.value.error_code == "CIRCUIT_OPEN"

    def test_half_open_after_recovery_timeout(self):
        """Circuit lets a trial call through once the recovery timeout passed."""
        clock = FakeMonotonic()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, name="test", clock=clock)
        breaker.record_failure()
        assert breaker.is_open

        clock.value += 30
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.guard()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker(failure_threshold=3, name="test")
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        assert breaker.get_stats()["failure_count"] == 0


# =============================================================================
# Retry Tests
# =============================================================================


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_retries_transport_errors(self):
        calls = 0
        delays: list[float] = []

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise httpx.ConnectError("refused")
            return "ok"

        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        result = await retry_async(flaky, max_attempts=3, base_delay=1.0, jitter=0, sleep=record_sleep)

        assert result == "ok"
        assert calls == 3
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        async def always_fails():
            raise ConnectionError("down")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_async(always_fails, max_attempts=2, sleep=no_sleep)
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, ConnectionError)

    @pytest.mark.asyncio
    async def test_non_retryable_errors_propagate(self):
        calls = 0

        async def bad_payload():
            nonlocal calls
            calls += 1
            raise ValueError("malformed")

        with pytest.raises(ValueError):
            await retry_async(bad_payload, sleep=no_sleep)
        assert calls == 1


# =============================================================================
# Source Guard Tests
# =============================================================================


class TestSourceGuard:
    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_request(self):
        guard = SourceGuard(name="exchange", sleep=no_sleep)
        calls = 0
        release = asyncio.Event()

        async def fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return ["record"]

        async def trigger():
            await asyncio.sleep(0)
            release.set()

        results = await asyncio.gather(
            guard.call("ACME", fetch), guard.call("ACME", fetch), trigger()
        )

        assert results[0] == results[1] == ["record"]
        assert calls == 1
        assert guard.get_stats()["pending_requests"] == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_open_the_circuit(self):
        guard = SourceGuard(name="registrar", failure_threshold=2, max_retries=2, sleep=no_sleep)

        async def down():
            raise httpx.ConnectTimeout("timeout")

        for _ in range(2):
            with pytest.raises(RetryExhaustedError):
                await guard.call("ACME", down)

        assert guard.circuit.is_open
        with pytest.raises(CircuitOpenError):
            await guard.call("ACME", down)

    @pytest.mark.asyncio
    async def test_success_closes_circuit(self):
        clock = FakeMonotonic()
        guard = SourceGuard(name="aggregator", failure_threshold=1, recovery_timeout=10, max_retries=1, clock=clock)

        async def down():
            raise ConnectionError("down")

        async def up():
            return 1

        with pytest.raises(RetryExhaustedError):
            await guard.call("x", down)
        clock.value += 10

        assert await guard.call("x", up) == 1
        assert guard.circuit.state == CircuitState.CLOSED
