"""Backoff and connection resilience utilities.

Two consumers:

- the worker scheduler uses :class:`RetryConfig` / :func:`calculate_backoff`
  to space out retries of items that hit transient enrichment errors;
- the PostgreSQL job store wraps read queries in :func:`with_db_retry` so a
  progress poll survives a brief database blip.

Usage:
    from bulkops.core.resilience import with_db_retry

    job_row = await with_db_retry(pool, lambda conn: conn.fetchrow(query, job_id))
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import asyncpg
import structlog

from bulkops.config import Settings

logger = structlog.get_logger(__name__)

# SQLSTATEs worth another attempt: connection loss, server restarts,
# serialization conflicts
TRANSIENT_SQLSTATES = frozenset(
    {
        "08000",
        "08001",
        "08003",
        "08004",
        "08006",
        "57P01",
        "57P02",
        "57P03",
        "40001",
        "40P01",
    }
)

TRANSIENT_DB_ERRORS = (
    asyncpg.InterfaceError,
    asyncpg.InternalClientError,
    asyncpg.TooManyConnectionsError,
    asyncio.TimeoutError,
    OSError,  # covers ConnectionError and TimeoutError
)


@dataclass
class RetryConfig:
    """Attempts and exponential backoff for one retried operation."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25

    @classmethod
    def for_items(cls, settings: Settings) -> "RetryConfig":
        """Item retry policy from settings."""
        return cls(
            max_attempts=settings.job_max_attempts,
            base_delay_seconds=settings.job_retry_base_delay_s,
            max_delay_seconds=settings.job_retry_max_delay_s,
            jitter_factor=settings.job_retry_jitter,
        )


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt + 1`` (``attempt`` is 0-indexed).

    ``base * exponential_base ** attempt``, capped at ``max_delay_seconds``,
    plus up to ``jitter_factor`` of that on top.
    """
    delay = min(
        config.base_delay_seconds * (config.exponential_base**attempt),
        config.max_delay_seconds,
    )
    # Jitter keeps items that failed together from retrying together
    return delay + delay * config.jitter_factor * random.random()


@dataclass
class CircuitBreaker:
    """Consecutive-failure breaker for one backing service."""

    name: str
    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0
    failures: int = 0
    last_failure: Optional[datetime] = None
    open_until: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.open_until is not None

    def allows(self) -> bool:
        """False while open; after the timeout one trial call goes through."""
        if self.open_until is None:
            return True
        if datetime.now(timezone.utc) >= self.open_until:
            logger.info("circuit_half_open", service=self.name, failures=self.failures)
            return True
        return False

    def record_success(self) -> None:
        if self.failures or self.is_open:
            logger.info("circuit_closed", service=self.name, previous_failures=self.failures)
        self.failures = 0
        self.last_failure = None
        self.open_until = None

    def record_failure(self) -> None:
        now = datetime.now(timezone.utc)
        self.failures += 1
        self.last_failure = now
        if self.failures >= self.failure_threshold:
            self.open_until = now + timedelta(seconds=self.reset_timeout_seconds)
            logger.warning(
                "circuit_opened",
                service=self.name,
                failures=self.failures,
                reset_at=self.open_until.isoformat(),
            )

    def status(self) -> dict[str, Any]:
        return {
            "failures": self.failures,
            "is_open": self.is_open,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


_db_circuit = CircuitBreaker("postgres")


def is_transient_db_error(error: BaseException) -> bool:
    """Connection-level failures and retryable SQLSTATEs; not query errors."""
    if isinstance(error, TRANSIENT_DB_ERRORS):
        return True
    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in TRANSIENT_SQLSTATES
    return False


async def with_db_retry(
    pool: asyncpg.Pool,
    operation: Callable[[asyncpg.Connection], Any],
    config: Optional[RetryConfig] = None,
) -> Any:
    """Run ``operation`` on a pooled connection, retrying transient failures.

    Only wrap idempotent operations: a retried write may already have
    committed. Exhausted retries count against the postgres circuit breaker;
    while it is open calls fail fast with RuntimeError.
    """
    config = config or RetryConfig()
    circuit = _db_circuit

    if not circuit.allows():
        raise RuntimeError(
            "Database circuit breaker is open - service recovering from outage"
        )

    for attempt in range(config.max_attempts):
        try:
            async with pool.acquire() as conn:
                result = await operation(conn)
        except Exception as e:
            if not is_transient_db_error(e):
                logger.warning(
                    "db_non_transient_error", error=str(e), error_type=type(e).__name__
                )
                raise
            if attempt == config.max_attempts - 1:
                circuit.record_failure()
                logger.error(
                    "db_retries_exhausted", attempts=config.max_attempts, error=str(e)
                )
                raise

            delay = calculate_backoff(attempt, config)
            logger.warning(
                "db_retry_attempt",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)
        else:
            circuit.record_success()
            return result

    raise RuntimeError("with_db_retry needs max_attempts >= 1")


def get_circuit_status() -> dict:
    """Breaker state for the health endpoint."""
    return {"postgres": _db_circuit.status()}


def reset_circuits() -> None:
    """Close every breaker. Tests call this between cases."""
    global _db_circuit
    _db_circuit = CircuitBreaker("postgres")
