"""Bulk job orchestrator - FastAPI Application."""

import structlog
import uvicorn
from fastapi import FastAPI

from bulkops import __version__
from bulkops.config import get_settings
from bulkops.core.lifespan import lifespan
from bulkops.core.middleware import request_middleware
from bulkops.core.sentry import init_sentry
from bulkops.routers import health, jobs, metrics

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    """Build the FastAPI app. State is wired up by the lifespan."""
    settings = get_settings()
    init_sentry(settings)

    app = FastAPI(
        title="Bulk Job Orchestrator",
        description="Resumable batch jobs for research, categorization and enrichment",
        version=__version__,
        lifespan=lifespan,
    )

    app.middleware("http")(request_middleware)

    app.include_router(health.router, tags=["Health"])
    app.include_router(metrics.router, tags=["Metrics"])
    app.include_router(jobs.router)
    return app


app = create_app()


if __name__ == "__main__":
    import logging

    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(message)s")
    uvicorn.run(
        "bulkops.main:app",
        host=settings.service_host,
        port=settings.service_port,
        log_level=settings.log_level.lower(),
    )
