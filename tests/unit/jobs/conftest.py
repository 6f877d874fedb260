"""Shared fixtures for job system tests."""

import pytest

from bulkops.core.resilience import RetryConfig
from bulkops.jobs.liveness import LivenessRegistry
from bulkops.jobs.scheduler import SchedulerOptions
from bulkops.repositories.memory import MemoryJobStore


@pytest.fixture
def store():
    return MemoryJobStore()


@pytest.fixture
def liveness():
    return LivenessRegistry()


@pytest.fixture
def fast_options():
    """Scheduler options with no backoff wait."""
    return SchedulerOptions(
        concurrency=3,
        retry=RetryConfig(
            max_attempts=3,
            base_delay_seconds=0.0,
            max_delay_seconds=0.0,
            jitter_factor=0.0,
        ),
    )
