"""Root conftest for test suite."""

import pytest

from bulkops.core.resilience import reset_circuits


@pytest.fixture(autouse=True)
def _reset_db_circuit():
    """Circuit breaker state is module-global; isolate it per test."""
    reset_circuits()
    yield
    reset_circuits()
