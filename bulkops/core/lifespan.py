"""Application lifespan management - startup and shutdown logic.

This is the composition root: it owns the store, the liveness registry, the
enrichment clients and the orchestrator, and hangs them off ``app.state``.
"""

import json
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
import structlog
from fastapi import FastAPI

from bulkops import __version__
from bulkops.config import Settings, get_settings
from bulkops.jobs.clients import build_registry, create_http_client
from bulkops.jobs.liveness import LivenessRegistry
from bulkops.jobs.orchestrator import JobOrchestrator
from bulkops.jobs.resolvers import StaticFilterResolver
from bulkops.jobs.scheduler import SchedulerOptions
from bulkops.repositories.base import JobStore
from bulkops.repositories.jobs import PostgresJobStore
from bulkops.repositories.memory import MemoryJobStore

logger = structlog.get_logger(__name__)


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns to Python objects."""
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


async def _init_database(settings: Settings) -> asyncpg.Pool:
    """Initialize asyncpg connection pool."""
    logger.info(
        "database_connecting",
        url_prefix=settings.database_url[:30] + "...",
    )
    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        ssl=settings.db_ssl,
        timeout=10,
        command_timeout=30,
        statement_cache_size=0,  # Disable for pgbouncer transaction mode
        init=_init_connection,
    )
    logger.info(
        "database_pool_initialized",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool


async def _init_store(settings: Settings) -> tuple[JobStore, Optional[asyncpg.Pool]]:
    if settings.store_backend == "memory":
        logger.warning("job_store_in_memory", reason="no DATABASE_URL configured")
        return MemoryJobStore(), None

    if not settings.database_url:
        raise RuntimeError("JOB_STORE_BACKEND=postgres requires DATABASE_URL")

    pool = await _init_database(settings)
    store = PostgresJobStore(pool)
    await store.ensure_schema()
    return store, pool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(
        "service_starting",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
        store_backend=settings.store_backend,
        job_concurrency=settings.job_concurrency,
    )

    store, pool = await _init_store(settings)
    http = create_http_client(settings)
    registry = build_registry(http)
    orchestrator = JobOrchestrator(
        store=store,
        liveness=LivenessRegistry(),
        registry=registry,
        resolver=StaticFilterResolver(),
        options=SchedulerOptions.from_settings(settings),
        poll_interval_s=settings.job_poll_interval_s,
    )

    app.state.db_pool = pool
    app.state.enrichment_registry = registry
    app.state.orchestrator = orchestrator

    # A fresh process has no loops: every processing job is orphaned
    orphans = await orchestrator.recover_orphans(
        auto_resume=settings.job_resume_orphans_on_startup
    )
    if orphans:
        logger.warning(
            "orphaned_jobs_found",
            count=len(orphans),
            auto_resume=settings.job_resume_orphans_on_startup,
        )

    yield

    logger.info("service_shutting_down", live_jobs=len(orchestrator.liveness))
    await orchestrator.shutdown(timeout=settings.job_shutdown_timeout_s)

    if http is not None:
        await http.aclose()
        logger.info("enrichment_client_closed")

    if pool is not None:
        await pool.close()
        logger.info("database_pool_closed")
