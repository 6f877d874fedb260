"""Health check endpoint."""

import time

import structlog
from fastapi import APIRouter, Depends, Request

from bulkops import __version__
from bulkops.config import Settings, get_settings
from bulkops.core.resilience import get_circuit_status
from bulkops.schemas import DependencyHealth, HealthResponse

router = APIRouter()
logger = structlog.get_logger(__name__)


async def check_database_health(pool) -> DependencyHealth:
    """Check PostgreSQL connectivity."""
    if pool is None:
        return DependencyHealth(status="disabled")
    start = time.perf_counter()
    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        latency = (time.perf_counter() - start) * 1000
        return DependencyHealth(status="ok", latency_ms=latency)
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        return DependencyHealth(status="error", latency_ms=latency, error=str(e))


@router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request, settings: Settings = Depends(get_settings)
) -> HealthResponse:
    """
    Check health of the service and its job store.

    Reports the store backend, enrichment kinds with a client, and how many
    dispatch loops are attached in this process.
    """
    state = request.app.state
    database = await check_database_health(getattr(state, "db_pool", None))
    orchestrator = getattr(state, "orchestrator", None)
    registry = getattr(state, "enrichment_registry", None)

    overall_status = "ok"
    if database.status == "error" or orchestrator is None:
        overall_status = "degraded"

    response = HealthResponse(
        status=overall_status,
        store_backend=settings.store_backend,
        database=database,
        enrichment_kinds=registry.kinds() if registry else [],
        live_jobs=len(orchestrator.liveness) if orchestrator else 0,
        circuit=get_circuit_status(),
        version=__version__,
    )

    logger.info(
        "health_check_completed",
        status=overall_status,
        database=database.status,
    )
    return response
