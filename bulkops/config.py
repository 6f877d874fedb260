"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Job/Item store
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL for the job/item tables"
    )
    job_store_backend: Literal["auto", "postgres", "memory"] = Field(
        default="auto",
        description="Store backend: auto uses postgres when DATABASE_URL is set, memory otherwise",
    )
    db_pool_min_size: int = Field(default=0, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=20, description="Maximum connection pool size")
    db_ssl: Optional[str] = Field(
        default=None, description="asyncpg ssl mode (e.g. 'require'); unset for local databases"
    )

    # Worker scheduler
    job_concurrency: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Maximum concurrent enrichment calls per job",
    )
    job_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts per item for transient enrichment errors",
    )
    job_retry_base_delay_s: float = Field(
        default=1.0, ge=0.0, description="Initial backoff before requeueing a transient failure"
    )
    job_retry_max_delay_s: float = Field(
        default=30.0, ge=0.0, description="Backoff cap for transient failures"
    )
    job_retry_jitter: float = Field(
        default=0.25, ge=0.0, le=1.0, description="Random jitter added to backoff (fraction)"
    )
    job_shutdown_timeout_s: float = Field(
        default=30.0, description="How long shutdown waits for in-flight items to drain"
    )
    job_resume_orphans_on_startup: bool = Field(
        default=False,
        description="Resume jobs left processing by a previous process instead of waiting for an operator",
    )
    job_poll_interval_s: float = Field(
        default=3.0, description="Poll interval suggested to progress views"
    )

    # Enrichment service
    enrichment_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the enrichment service; jobs POST to {base}/{kind}",
    )
    enrichment_api_key: Optional[str] = Field(
        default=None, description="Bearer token for the enrichment service"
    )
    enrichment_timeout_s: float = Field(
        default=120.0, description="Enrichment request timeout in seconds"
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking and performance monitoring"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)"
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)"
    )

    @property
    def store_backend(self) -> str:
        """Resolve the effective store backend."""
        if self.job_store_backend == "auto":
            return "postgres" if self.database_url else "memory"
        return self.job_store_backend


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
