"""Tests for settings resolution."""

import pytest
from pydantic import ValidationError

from bulkops.config import Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("DATABASE_URL", "JOB_STORE_BACKEND", "JOB_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.job_concurrency == 50
    assert settings.job_max_attempts == 3
    assert settings.job_retry_base_delay_s == 1.0
    assert settings.job_retry_max_delay_s == 30.0
    assert settings.job_resume_orphans_on_startup is False


def test_auto_backend_without_database_is_memory():
    assert Settings(_env_file=None).store_backend == "memory"


def test_auto_backend_with_database_is_postgres():
    settings = Settings(_env_file=None, database_url="postgresql://localhost/jobs")
    assert settings.store_backend == "postgres"


def test_explicit_backend_wins():
    settings = Settings(
        _env_file=None,
        database_url="postgresql://localhost/jobs",
        job_store_backend="memory",
    )
    assert settings.store_backend == "memory"


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("JOB_CONCURRENCY", "8")
    assert Settings(_env_file=None).job_concurrency == 8


def test_concurrency_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, job_concurrency=0)
