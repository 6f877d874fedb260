"""Enrichment client registry."""

from typing import Any, Optional, Protocol, runtime_checkable

from bulkops.jobs.types import JobKind


@runtime_checkable
class EnrichmentClient(Protocol):
    """Performs the research/categorization call for one item.

    Must be safe to call more than once for the same payload: transient
    failures are retried.
    """

    async def enrich(self, payload: dict[str, Any]) -> dict[str, Any]: ...


class EnrichmentRegistry:
    """Registry mapping job kinds to their enrichment clients."""

    def __init__(self):
        self._clients: dict[JobKind, EnrichmentClient] = {}

    def register(self, kind: JobKind, client: EnrichmentClient) -> None:
        """Register a client for a job kind. A later call replaces it."""
        self._clients[kind] = client

    def find(self, kind: JobKind) -> Optional[EnrichmentClient]:
        return self._clients.get(kind)

    def kinds(self) -> list[JobKind]:
        return list(self._clients)
