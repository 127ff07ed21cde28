"""Retry and circuit breaking for calls to flaky dependencies."""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerMetrics,
    CircuitBreakerResult,
    CircuitState
)
from .retry_manager import RetryConditions, RetryManager, RetryResult, RetryStrategy

__all__ = [
    'CircuitBreaker',
    'CircuitBreakerConfig',
    'CircuitBreakerMetrics',
    'CircuitBreakerResult',
    'CircuitState',
    'RetryConditions',
    'RetryManager',
    'RetryResult',
    'RetryStrategy'
]
