"""Tests for backoff and database retry helpers."""

from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from bulkops.config import Settings
from bulkops.core import resilience
from bulkops.core.resilience import (
    RetryConfig,
    calculate_backoff,
    get_circuit_status,
    is_transient_db_error,
    with_db_retry,
)


@pytest.fixture
def mock_pool():
    conn = AsyncMock()
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = False
    return pool


NO_WAIT = RetryConfig(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0)


class TestCalculateBackoff:
    def test_exponential_without_jitter(self):
        config = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=30.0, jitter_factor=0.0)

        assert calculate_backoff(0, config) == 1.0
        assert calculate_backoff(1, config) == 2.0
        assert calculate_backoff(2, config) == 4.0

    def test_capped_at_max_delay(self):
        config = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=30.0, jitter_factor=0.0)
        assert calculate_backoff(10, config) == 30.0

    def test_jitter_bounds(self):
        config = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=30.0, jitter_factor=0.25)

        for _ in range(50):
            delay = calculate_backoff(1, config)
            assert 2.0 <= delay <= 2.5

    def test_item_policy_from_settings(self):
        settings = Settings(
            job_max_attempts=5,
            job_retry_base_delay_s=0.5,
            job_retry_max_delay_s=8.0,
            job_retry_jitter=0.1,
        )

        config = RetryConfig.for_items(settings)

        assert config.max_attempts == 5
        assert config.base_delay_seconds == 0.5
        assert config.max_delay_seconds == 8.0
        assert config.jitter_factor == 0.1


class TestWithDbRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, mock_pool):
        operation = AsyncMock(return_value="row")

        assert await with_db_retry(mock_pool, operation, NO_WAIT) == "row"
        operation.assert_called_once()

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, mock_pool):
        operation = AsyncMock(side_effect=[ConnectionResetError("reset"), "row"])

        assert await with_db_retry(mock_pool, operation, NO_WAIT) == "row"
        assert operation.call_count == 2

    @pytest.mark.asyncio
    async def test_non_transient_error_raises_immediately(self, mock_pool):
        operation = AsyncMock(side_effect=ValueError("bad query"))

        with pytest.raises(ValueError):
            await with_db_retry(mock_pool, operation, NO_WAIT)
        operation.assert_called_once()

    @pytest.mark.asyncio
    async def test_pool_exhaustion_is_transient(self, mock_pool):
        operation = AsyncMock(
            side_effect=[asyncpg.TooManyConnectionsError("too many"), "row"]
        )

        assert await with_db_retry(mock_pool, operation, NO_WAIT) == "row"

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_toward_circuit(self, mock_pool):
        operation = AsyncMock(side_effect=ConnectionRefusedError("down"))

        with pytest.raises(ConnectionRefusedError):
            await with_db_retry(mock_pool, operation, NO_WAIT)

        assert operation.call_count == 3
        assert get_circuit_status()["postgres"]["failures"] == 1

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_requests(self, mock_pool):
        operation = AsyncMock(side_effect=ConnectionRefusedError("down"))
        threshold = resilience._db_circuit.failure_threshold

        for _ in range(threshold):
            with pytest.raises(ConnectionRefusedError):
                await with_db_retry(mock_pool, operation, NO_WAIT)

        assert get_circuit_status()["postgres"]["is_open"] is True
        with pytest.raises(RuntimeError, match="circuit breaker is open"):
            await with_db_retry(mock_pool, AsyncMock(return_value="row"), NO_WAIT)


class TestTransientDbErrors:
    def test_serialization_failure_is_transient(self):
        assert is_transient_db_error(asyncpg.exceptions.SerializationError("conflict"))

    def test_constraint_violation_is_not(self):
        assert not is_transient_db_error(asyncpg.exceptions.UniqueViolationError("dup"))

    def test_connection_errors_are_transient(self):
        assert is_transient_db_error(ConnectionRefusedError("refused"))
        assert is_transient_db_error(asyncpg.InterfaceError("pool is closing"))
        assert not is_transient_db_error(ValueError("bad query"))
