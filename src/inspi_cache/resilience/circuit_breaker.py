"""
Circuit Breaker Implementation

Three-state breaker (closed, open, half-open) guarding one logical
dependency. While open, calls are rejected without running the wrapped
operation until the recovery timeout has elapsed; the half-open state then
lets a limited number of trial calls through.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

import structlog

from ..exceptions import CircuitOpenException

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Probing whether the dependency recovered


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    # Consecutive failures before opening
    failure_threshold: int = 5

    # Milliseconds to stay open before probing
    recovery_timeout_ms: float = 60000.0

    # Trial calls admitted while half-open; that many successes close the circuit
    half_open_max_calls: int = 3

    # Only these exception types count as failures
    failure_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")
        if self.recovery_timeout_ms < 0:
            raise ValueError("recovery_timeout_ms must not be negative")

    @classmethod
    def from_settings(cls, settings, **overrides) -> 'CircuitBreakerConfig':
        """Build from ``ResilienceSettings``."""
        values = {
            'failure_threshold': settings.breaker_failure_threshold,
            'recovery_timeout_ms': settings.breaker_recovery_timeout_ms,
            'half_open_max_calls': settings.breaker_half_open_max_calls,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    circuit_opens: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.successful_calls / self.total_calls

    @property
    def failure_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.failed_calls / self.total_calls


@dataclass
class CircuitBreakerResult:
    """Outcome of ``CircuitBreaker.execute``."""
    success: bool
    data: Any = None
    error: Optional[BaseException] = None
    rejected: bool = False
    state: CircuitState = CircuitState.CLOSED


class CircuitBreaker:
    """
    Circuit breaker for async operations.

    State is mutated only between awaits, so no lock is needed on a single
    event loop.
    """

    def __init__(
        self,
        name: str = "default",
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_calls = 0
        self.half_open_successes = 0
        self.last_failure_at: Optional[float] = None
        self.last_state_change_at = self.clock()
        self.metrics = CircuitBreakerMetrics()

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self.state
        self.state = new_state
        self.last_state_change_at = self.clock()
        if new_state == CircuitState.OPEN:
            self.metrics.circuit_opens += 1
        if new_state == CircuitState.HALF_OPEN:
            self.half_open_calls = 0
            self.half_open_successes = 0

        logger.info("Circuit breaker state changed",
                    circuit=self.name,
                    from_state=old_state.value,
                    to_state=new_state.value,
                    failure_count=self.failure_count)

    def _retry_after_ms(self) -> Optional[float]:
        if self.last_failure_at is None:
            return None
        elapsed_ms = (self.clock() - self.last_failure_at) * 1000
        return max(0.0, self.config.recovery_timeout_ms - elapsed_ms)

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_at is None:
            return True
        elapsed_ms = (self.clock() - self.last_failure_at) * 1000
        return elapsed_ms >= self.config.recovery_timeout_ms

    def _admit(self) -> None:
        """Decide whether a call may run; raises CircuitOpenException if not."""
        if self.state == CircuitState.OPEN:
            if not self._should_attempt_reset():
                self._reject()
            self._transition(CircuitState.HALF_OPEN)

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.config.half_open_max_calls:
                self._reject()
            self.half_open_calls += 1

    def _reject(self) -> None:
        self.metrics.rejected_calls += 1
        retry_after_ms = self._retry_after_ms()
        logger.debug("Circuit breaker rejected call",
                     circuit=self.name,
                     state=self.state.value,
                     retry_after_ms=retry_after_ms)
        raise CircuitOpenException(name=self.name, retry_after_ms=retry_after_ms)

    def _record_success(self) -> None:
        self.metrics.successful_calls += 1
        self.metrics.last_success_time = time.time()

        if self.state == CircuitState.HALF_OPEN:
            self.half_open_successes += 1
            if self.half_open_successes >= self.config.half_open_max_calls:
                self.failure_count = 0
                self._transition(CircuitState.CLOSED)
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0

    def _record_failure(self, error: BaseException) -> None:
        self.metrics.failed_calls += 1
        self.metrics.last_failure_time = time.time()
        self.last_failure_at = self.clock()

        if self.state == CircuitState.HALF_OPEN:
            self.half_open_calls = 0
            self.half_open_successes = 0
            self._transition(CircuitState.OPEN)
            logger.warning("Circuit breaker reopened after half-open failure",
                           circuit=self.name,
                           error_type=type(error).__name__)
            return

        if self.state == CircuitState.CLOSED:
            self.failure_count += 1
            if self.failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)
                logger.warning("Circuit breaker opened due to failure threshold",
                               circuit=self.name,
                               failure_count=self.failure_count,
                               threshold=self.config.failure_threshold,
                               error_type=type(error).__name__)

    async def call(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run the operation under breaker protection.

        Raises:
            CircuitOpenException: If the call was rejected
            Exception: The operation's own error
        """
        self._admit()
        self.metrics.total_calls += 1

        try:
            result = await operation()
        except self.config.failure_exceptions as e:
            self._record_failure(e)
            raise
        except Exception:
            # Not a counted failure; give the trial slot back
            self._release_trial_slot()
            raise

        self._record_success()
        return result

    def _release_trial_slot(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.half_open_calls = max(0, self.half_open_calls - 1)

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> CircuitBreakerResult:
        """Like ``call`` but reports the outcome instead of raising."""
        try:
            data = await self.call(operation)
        except CircuitOpenException as e:
            return CircuitBreakerResult(success=False, error=e, rejected=True, state=self.state)
        except Exception as e:
            return CircuitBreakerResult(success=False, error=e, state=self.state)
        return CircuitBreakerResult(success=True, data=data, state=self.state)

    def reset(self) -> None:
        """Force the circuit closed and zero all counters."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_calls = 0
        self.half_open_successes = 0
        self.last_failure_at = None
        self.last_state_change_at = self.clock()
        logger.info("Circuit breaker manually reset to CLOSED state", circuit=self.name)

    def get_status(self) -> Dict[str, Any]:
        """Get current circuit breaker status for monitoring."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "half_open_calls": self.half_open_calls,
            "last_failure_at": self.last_failure_at,
            "last_state_change_at": self.last_state_change_at,
            "metrics": {
                "total_calls": self.metrics.total_calls,
                "successful_calls": self.metrics.successful_calls,
                "failed_calls": self.metrics.failed_calls,
                "rejected_calls": self.metrics.rejected_calls,
                "success_rate": self.metrics.success_rate,
                "failure_rate": self.metrics.failure_rate,
                "circuit_opens": self.metrics.circuit_opens,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout_ms": self.config.recovery_timeout_ms,
                "half_open_max_calls": self.config.half_open_max_calls,
            },
        }
