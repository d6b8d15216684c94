"""
Resilience helpers for result source calls.

- CircuitBreaker: fail fast after consecutive source failures
- retry_async: exponential backoff with jitter on transport errors
- SourceGuard: breaker + retry + in-flight request sharing per source

Usage:
    guard = SourceGuard(name="exchange", failure_threshold=5, recovery_timeout=60)

    records = await guard.call(
        key="fetch:ACME",
        func=lambda: client.get("/v1/allotment/..."),
    )
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from allotrack.core.exceptions import SourceUnavailableError
from allotrack.core.logging import get_logger


logger = get_logger("services.data_providers.resilience")

T = TypeVar("T")


class CircuitOpenError(SourceUnavailableError):
    """Raised while a source's circuit is open."""

    error_code = "CIRCUIT_OPEN"
    message = "Circuit breaker is open"

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        super().__init__(
            message=f"{name}: {message or self.message}",
            details={"source": name},
        )


class RetryExhaustedError(SourceUnavailableError):
    """Raised when every retry attempt failed."""

    error_code = "RETRY_EXHAUSTED"

    def __init__(self, attempts: int, last_error: Exception | None = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"All {attempts} retry attempts exhausted"
        if last_error:
            message += f": {last_error}"
        super().__init__(message=message, details={"attempts": attempts})


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED counts failures; at ``failure_threshold`` the circuit OPENs and
    rejects calls; after ``recovery_timeout`` seconds it reports HALF_OPEN
    and lets a trial call through. A success closes it again.

    Args:
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds before a trial call is allowed
        name: Source name used in logs
        clock: Monotonic time source (injectable for tests)
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    name: str = "source"
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: float | None = field(default=None, init=False)

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self.clock() - self._last_failure_time >= self.recovery_timeout:
                return CircuitState.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def guard(self) -> None:
        """Raise CircuitOpenError if calls are currently blocked."""
        if self.state == CircuitState.OPEN:
            remaining = self.recovery_timeout - (self.clock() - (self._last_failure_time or 0))
            raise CircuitOpenError(
                self.name,
                f"open after {self._failure_count} failures, retry in {remaining:.1f}s",
            )

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"[{self.name}] Circuit closed after successful recovery")
        self.reset()

    def record_failure(self, error: Exception | None = None) -> None:
        self._failure_count += 1
        self._last_failure_time = self.clock()

        if self._failure_count >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning(
                    f"[{self.name}] Circuit OPEN after {self._failure_count} failures",
                    extra={"error": str(error) if error else None},
                )
            self._state = CircuitState.OPEN
        else:
            logger.debug(f"[{self.name}] Failure {self._failure_count}/{self.failure_threshold}")

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }


# Transport-level failures worth another attempt
DEFAULT_RETRY_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.TransportError,
    ConnectionError,
    asyncio.TimeoutError,
)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    jitter: float = 0.5,
    retry_on: tuple[type[Exception], ...] = DEFAULT_RETRY_EXCEPTIONS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Retry an async callable with exponential backoff.

    Args:
        func: Async callable to retry
        max_attempts: Maximum attempts, including the first
        base_delay: Initial delay in seconds
        max_delay: Delay cap
        exponential_base: Growth factor per attempt
        jitter: Random factor (0.5 = +/-50% of the delay)
        retry_on: Exception types that trigger another attempt
        sleep: Awaitable sleep (injectable for tests)

    Raises:
        RetryExhaustedError: If all attempts fail with a retryable error
    """
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except retry_on as e:
            last_error = e
            if attempt >= max_attempts:
                raise RetryExhaustedError(max_attempts, last_error) from e

            delay = min(base_delay * (exponential_base ** (attempt - 1)), max_delay)
            if jitter > 0:
                delay *= 1 + (random.random() - 0.5) * 2 * jitter
            logger.debug(f"Retry {attempt}/{max_attempts} after {delay:.2f}s: {e}")
            await sleep(delay)

    raise RetryExhaustedError(max_attempts, last_error)


class SourceGuard:
    """
    Circuit breaker and retry around one source, sharing in-flight calls.

    Concurrent calls with the same key await a single underlying request.
    Any failure that survives the retries counts against the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        retry_on: tuple[type[Exception], ...] = DEFAULT_RETRY_EXCEPTIONS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.circuit = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            name=name,
            clock=clock,
        )
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._retry_on = retry_on
        self._sleep = sleep
        self._pending: dict[str, asyncio.Future[Any]] = {}

    async def _guarded(self, func: Callable[[], Awaitable[T]]) -> T:
        self.circuit.guard()
        try:
            result = await retry_async(
                func,
                max_attempts=self._max_retries,
                base_delay=self._retry_delay,
                retry_on=self._retry_on,
                sleep=self._sleep,
            )
        except Exception as e:
            self.circuit.record_failure(e)
            raise
        self.circuit.record_success()
        return result

    async def call(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            result = await self._guarded(func)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # mark retrieved; there may be no waiters
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._pending.pop(key, None)

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "circuit": self.circuit.get_stats(),
            "pending_requests": len(self._pending),
        }
