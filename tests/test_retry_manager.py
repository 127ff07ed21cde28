"""
Unit tests for the retry manager.
Tests backoff calculation, retry conditions and strategy overrides.
"""
import asyncio
import random

import pytest

from inspi_cache.config import ResilienceSettings
from inspi_cache.exceptions import (
    RemoteStoreConnectionException,
    RemoteStoreUnavailableException,
    RetryStrategyException,
)
from inspi_cache.resilience.retry_manager import RetryConditions, RetryManager, RetryStrategy


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry_manager(sleeps):
    """Retry manager without jitter that records sleeps instead of sleeping."""
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RetryManager(RetryStrategy(jitter=False), sleep=fake_sleep)


def flaky(failures, result="ok", error=ConnectionError):
    """Operation failing a fixed number of times before succeeding."""
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) <= failures:
            raise error("attempt failed")
        return result

    operation.calls = calls
    return operation


class TestRetryStrategy:
    """Test strategy validation."""

    def test_defaults(self):
        strategy = RetryStrategy()

        assert strategy.max_retries == 3
        assert strategy.base_delay_ms == 1000
        assert strategy.max_delay_ms == 30000
        assert strategy.backoff_factor == 2
        assert strategy.jitter is True

    @pytest.mark.parametrize("field_name,value", [
        ("max_retries", -1),
        ("base_delay_ms", 0),
        ("max_delay_ms", -5),
        ("backoff_factor", 0.5),
        ("retry_condition", "always"),
    ])
    def test_rejects_invalid_fields(self, field_name, value):
        with pytest.raises(RetryStrategyException) as exc_info:
            RetryStrategy(**{field_name: value})
        assert exc_info.value.details["field"] == field_name

    def test_invalid_strategy_is_a_value_error(self):
        with pytest.raises(ValueError):
            RetryStrategy(backoff_factor=0)

    def test_from_settings(self):
        settings = ResilienceSettings(_env_file=None, retry_max_retries=5, retry_backoff_factor=1.5)

        strategy = RetryStrategy.from_settings(settings)

        assert strategy.max_retries == 5
        assert strategy.backoff_factor == 1.5


class TestCalculateDelay:
    """Test backoff bounds."""

    def test_first_attempt_runs_immediately(self, retry_manager):
        assert retry_manager.calculate_delay(0) == 0

    def test_exponential_backoff(self, retry_manager):
        assert retry_manager.calculate_delay(1) == 1000
        assert retry_manager.calculate_delay(2) == 2000
        assert retry_manager.calculate_delay(5) == 16000

    def test_clamped_to_max_delay(self, retry_manager):
        assert retry_manager.calculate_delay(10) == 30000

    def test_linear_backoff(self, retry_manager):
        strategy = RetryStrategy(backoff_factor=1, jitter=False)

        assert retry_manager.calculate_delay(1, strategy) == 1000
        assert retry_manager.calculate_delay(3, strategy) == 3000

    def test_jitter_stays_within_half_to_full_delay(self):
        manager = RetryManager(RetryStrategy(jitter=True), rng=random.Random(42))
        unjittered = RetryStrategy(jitter=False)

        for attempt in range(1, 8):
            ceiling = manager.calculate_delay(attempt, unjittered)
            delay = manager.calculate_delay(attempt)
            assert ceiling * 0.5 <= delay <= ceiling


class TestExecute:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, retry_manager, sleeps):
        result = await retry_manager.execute(flaky(0))

        assert result.success is True
        assert result.data == "ok"
        assert result.attempts == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_success_after_retries(self, retry_manager, sleeps):
        result = await retry_manager.execute(flaky(2))

        assert result.success is True
        assert result.attempts == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, retry_manager, sleeps):
        operation = flaky(10)

        result = await retry_manager.execute(operation)

        assert result.success is False
        assert isinstance(result.error, ConnectionError)
        assert result.attempts == 4
        assert len(operation.calls) == 4
        assert sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_condition_stops_retrying(self, sleeps):
        async def fake_sleep(seconds):
            sleeps.append(seconds)

        manager = RetryManager(RetryStrategy(jitter=False, retry_condition=RetryConditions.never),
                               sleep=fake_sleep)

        result = await manager.execute(flaky(5))

        assert result.success is False
        assert result.attempts == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_condition_receives_attempt_index(self, retry_manager):
        seen = []

        def condition(error, attempt):
            seen.append(attempt)
            return attempt < 1

        result = await retry_manager.execute(flaky(5), {"retry_condition": condition})

        assert seen == [0, 1]
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_network_condition_skips_logic_errors(self, retry_manager):
        operation = flaky(5, error=KeyError)

        result = await retry_manager.execute(operation, {"retry_condition": RetryConditions.network_errors})

        assert result.attempts == 1
        assert isinstance(result.error, KeyError)

    @pytest.mark.asyncio
    async def test_override_mapping(self, retry_manager, sleeps):
        result = await retry_manager.execute(flaky(5), {"max_retries": 1, "base_delay_ms": 50})

        assert result.attempts == 2
        assert sleeps == [0.05]
        assert retry_manager.strategy.max_retries == 3

    @pytest.mark.asyncio
    async def test_override_strategy(self, retry_manager):
        result = await retry_manager.execute(flaky(5), RetryStrategy(max_retries=0))

        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_override_field(self, retry_manager):
        with pytest.raises(RetryStrategyException):
            await retry_manager.execute(flaky(0), {"retries": 2})

    @pytest.mark.asyncio
    async def test_invalid_override_value(self, retry_manager):
        with pytest.raises(RetryStrategyException):
            await retry_manager.execute(flaky(0), {"backoff_factor": 0.1})

    @pytest.mark.asyncio
    async def test_stats(self, retry_manager):
        await retry_manager.execute(flaky(1))
        await retry_manager.execute(flaky(10), {"max_retries": 1})

        stats = retry_manager.get_stats()
        assert stats['total_operations'] == 2
        assert stats['successful_operations'] == 1
        assert stats['failed_operations'] == 1
        assert stats['total_attempts'] == 4
        assert stats['total_retries'] == 2
        assert stats['success_rate'] == 0.5

    @pytest.mark.asyncio
    async def test_backoff_sleep_is_cancellable(self):
        manager = RetryManager(RetryStrategy(base_delay_ms=10000, jitter=False))
        operation = flaky(10)

        task = asyncio.create_task(manager.execute(operation))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert operation.calls == [1]
        assert manager.stats['total_retries'] == 0


class TestRetryConditions:
    """Test the stock retry conditions."""

    def test_network_errors(self):
        assert RetryConditions.network_errors(ConnectionError(), 0)
        assert RetryConditions.network_errors(TimeoutError(), 0)
        assert not RetryConditions.network_errors(ValueError(), 0)

    def test_transient_remote_errors(self):
        assert RetryConditions.transient_remote_errors(RemoteStoreConnectionException(), 0)
        assert not RetryConditions.transient_remote_errors(RemoteStoreUnavailableException(), 0)
        assert not RetryConditions.transient_remote_errors(ValueError(), 0)

    def test_always_and_never(self):
        assert RetryConditions.always(ValueError(), 5)
        assert not RetryConditions.never(ValueError(), 0)
