"""Middleware configuration for the FastAPI application."""

import time
import uuid

import structlog
from fastapi import Request
from fastapi.routing import APIRoute

from bulkops import __version__
from bulkops.routers import metrics

logger = structlog.get_logger(__name__)


def _route_template(request: Request) -> str:
    # Label metrics by route template so job ids don't explode cardinality
    route = request.scope.get("route")
    if isinstance(route, APIRoute):
        return route.path
    return request.url.path


async def request_middleware(request: Request, call_next):
    """Add request ID and timing to all requests."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start_time) * 1000

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.2f}"
    response.headers["X-API-Version"] = __version__

    # Skip /metrics to avoid recursion
    if request.url.path != "/metrics":
        metrics.record_request(
            method=request.method,
            endpoint=_route_template(request),
            status_code=response.status_code,
            duration=duration_ms / 1000,
        )

    logger.info(
        "request_completed",
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    return response
