"""HTTP enrichment client.

Posts one item payload to ``{base_url}/{kind}`` and returns the JSON body.
Non-2xx responses are raised as ``httpx.HTTPStatusError`` and classified by
the scheduler (401 -> auth, 429 -> rate limit, ...).
"""

from typing import Any, Optional

import httpx
import structlog

from bulkops.config import Settings
from bulkops.jobs.registry import EnrichmentRegistry
from bulkops.jobs.types import JobKind

logger = structlog.get_logger(__name__)


class HttpEnrichmentClient:
    """Enrichment client backed by a remote HTTP service."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        kind: JobKind,
    ):
        self._http = http
        self._kind = kind

    @property
    def kind(self) -> JobKind:
        return self._kind

    async def enrich(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._http.post(f"/{self._kind.value}", json=payload)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            return {"value": body}
        return body


def create_http_client(settings: Settings) -> Optional[httpx.AsyncClient]:
    """Build the shared httpx client, or None when no service is configured."""
    if not settings.enrichment_base_url:
        return None
    headers = {}
    if settings.enrichment_api_key:
        headers["Authorization"] = f"Bearer {settings.enrichment_api_key}"
    return httpx.AsyncClient(
        base_url=settings.enrichment_base_url.rstrip("/"),
        headers=headers,
        timeout=settings.enrichment_timeout_s,
    )


def build_registry(http: Optional[httpx.AsyncClient]) -> EnrichmentRegistry:
    """Register an HTTP client for every job kind."""
    registry = EnrichmentRegistry()
    if http is None:
        logger.warning("enrichment_service_not_configured")
        return registry
    for kind in JobKind:
        registry.register(kind, HttpEnrichmentClient(http, kind))
    logger.info(
        "enrichment_clients_registered",
        base_url=str(http.base_url),
        kinds=[k.value for k in JobKind],
    )
    return registry
