"""External allotment result sources with circuit breaking and retries."""

from .resilience import CircuitBreaker, CircuitOpenError, CircuitState, RetryExhaustedError, SourceGuard, retry_async
from .sources import AggregatorSource, ExchangeSource, HttpResultSource, RegistrarSource, build_sources


__all__ = [
    "AggregatorSource",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ExchangeSource",
    "HttpResultSource",
    "RegistrarSource",
    "RetryExhaustedError",
    "SourceGuard",
    "build_sources",
    "retry_async",
]
