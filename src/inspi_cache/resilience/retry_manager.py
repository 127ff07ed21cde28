"""
Retry manager.

Runs a fallible async operation under a backoff policy and reports the
outcome as a ``RetryResult``. Failures of the operation never escape
``execute``; only a malformed strategy raises.
"""
import asyncio
import random
import time
from dataclasses import dataclass, field, fields, replace
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import structlog

from ..exceptions import RemoteStoreConnectionException, RemoteStoreNotReadyException, RetryStrategyException

logger = structlog.get_logger(__name__)

RetryCondition = Callable[[Exception, int], bool]
Operation = Callable[[], Awaitable[Any]]


class RetryConditions:
    """Stock retry conditions."""

    @staticmethod
    def always(error: Exception, attempt: int) -> bool:
        return True

    @staticmethod
    def never(error: Exception, attempt: int) -> bool:
        return False

    @staticmethod
    def network_errors(error: Exception, attempt: int) -> bool:
        """Retry socket level failures and timeouts."""
        return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError))

    @staticmethod
    def transient_remote_errors(error: Exception, attempt: int) -> bool:
        """Retry remote store failures that may heal on their own."""
        if isinstance(error, (RemoteStoreConnectionException, RemoteStoreNotReadyException)):
            # An exhausted reconnect budget will not heal by retrying
            return error.error_code != "REMOTE_STORE_UNAVAILABLE"
        return RetryConditions.network_errors(error, attempt)


@dataclass(frozen=True)
class RetryStrategy:
    """Backoff policy; delays are in milliseconds."""
    max_retries: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    backoff_factor: float = 2.0
    jitter: bool = True
    retry_condition: RetryCondition = field(default=RetryConditions.always, compare=False)

    def __post_init__(self):
        if self.max_retries < 0:
            raise RetryStrategyException("max_retries must not be negative", "max_retries", self.max_retries)
        if self.base_delay_ms <= 0:
            raise RetryStrategyException("base_delay_ms must be positive", "base_delay_ms", self.base_delay_ms)
        if self.max_delay_ms < 0:
            raise RetryStrategyException("max_delay_ms must not be negative", "max_delay_ms", self.max_delay_ms)
        if self.backoff_factor < 1:
            raise RetryStrategyException("backoff_factor must be at least 1", "backoff_factor",
                                         self.backoff_factor)
        if not callable(self.retry_condition):
            raise RetryStrategyException("retry_condition must be callable", "retry_condition")

    @classmethod
    def from_settings(cls, settings, retry_condition: RetryCondition = RetryConditions.always) -> 'RetryStrategy':
        """Build the default strategy from ``ResilienceSettings``."""
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            backoff_factor=settings.retry_backoff_factor,
            jitter=settings.retry_jitter,
            retry_condition=retry_condition,
        )


@dataclass
class RetryResult:
    """Outcome of a retried operation."""
    success: bool
    data: Any = None
    error: Optional[Exception] = None
    attempts: int = 0
    total_duration_ms: float = 0.0


class RetryManager:
    """Executes operations with retry and backoff."""

    def __init__(
        self,
        strategy: Optional[RetryStrategy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.strategy = strategy or RetryStrategy()
        self._sleep = sleep
        self._random = rng or random.Random()

        self.stats = {
            'total_operations': 0,
            'successful_operations': 0,
            'failed_operations': 0,
            'total_attempts': 0,
            'total_retries': 0,
        }

    def _resolve_strategy(self, override: Union[RetryStrategy, Mapping[str, Any], None]) -> RetryStrategy:
        if override is None:
            return self.strategy
        if isinstance(override, RetryStrategy):
            return override
        if isinstance(override, Mapping):
            known = {f.name for f in fields(RetryStrategy)}
            unknown = set(override) - known
            if unknown:
                raise RetryStrategyException(
                    f"Unknown retry strategy fields: {', '.join(sorted(unknown))}", "strategy_override"
                )
            return replace(self.strategy, **override)
        raise RetryStrategyException("strategy_override must be a RetryStrategy or a mapping",
                                     "strategy_override", type(override).__name__)

    def calculate_delay(self, attempt: int, strategy: Optional[RetryStrategy] = None) -> float:
        """
        Delay in milliseconds before the given attempt.

        Attempt 0 runs immediately. Linear backoff when the factor is 1,
        exponential otherwise, clamped to ``max_delay_ms`` and, with jitter,
        scaled by a random factor in [0.5, 1.0].
        """
        strategy = strategy or self.strategy
        if attempt <= 0:
            return 0.0

        if strategy.backoff_factor == 1:
            delay = strategy.base_delay_ms * attempt
        else:
            delay = strategy.base_delay_ms * strategy.backoff_factor ** (attempt - 1)

        delay = min(max(delay, 0.0), strategy.max_delay_ms)

        if strategy.jitter:
            delay *= self._random.uniform(0.5, 1.0)

        return delay

    async def execute(
        self,
        operation: Operation,
        strategy_override: Union[RetryStrategy, Mapping[str, Any], None] = None,
    ) -> RetryResult:
        """
        Run the operation until it succeeds, the retry condition declines
        or ``max_retries`` retries have been spent.

        Args:
            operation: Zero-argument coroutine function
            strategy_override: Full strategy or a mapping of fields to change

        Returns:
            RetryResult with the data or the last error

        Raises:
            RetryStrategyException: If the override is malformed
        """
        strategy = self._resolve_strategy(strategy_override)
        started = time.monotonic()
        last_error: Optional[Exception] = None
        attempts = 0

        self.stats['total_operations'] += 1

        for attempt in range(strategy.max_retries + 1):
            if attempt > 0:
                delay_ms = self.calculate_delay(attempt, strategy)
                logger.debug("Retrying operation", attempt=attempt, delay_ms=round(delay_ms, 1))
                await self._sleep(delay_ms / 1000.0)
                self.stats['total_retries'] += 1

            attempts += 1
            self.stats['total_attempts'] += 1

            try:
                data = await operation()
            except Exception as e:
                last_error = e
                logger.warning("Operation attempt failed",
                               attempt=attempt,
                               error=str(e),
                               error_type=type(e).__name__)

                if not strategy.retry_condition(e, attempt):
                    logger.info("Retry condition declined, giving up",
                                attempt=attempt,
                                error_type=type(e).__name__)
                    break
                continue

            self.stats['successful_operations'] += 1
            return RetryResult(
                success=True,
                data=data,
                attempts=attempts,
                total_duration_ms=(time.monotonic() - started) * 1000,
            )

        self.stats['failed_operations'] += 1
        logger.error("Operation failed after retries",
                     attempts=attempts,
                     error=str(last_error) if last_error else None)
        return RetryResult(
            success=False,
            error=last_error,
            attempts=attempts,
            total_duration_ms=(time.monotonic() - started) * 1000,
        )

    def get_stats(self) -> Dict[str, Any]:
        total = self.stats['total_operations']
        return {
            **self.stats,
            'success_rate': self.stats['successful_operations'] / total if total > 0 else 0,
            'average_attempts': self.stats['total_attempts'] / total if total > 0 else 0,
        }
