"""Filter resolvers: turn a job's filters into its ordered item payloads.

Resolution happens once, at job creation; items are fixed afterwards.
"""

from typing import Any, Protocol

from bulkops.jobs.types import JobKind


class FilterResolver(Protocol):
    async def resolve(
        self, kind: JobKind, filters: dict[str, Any]
    ) -> list[dict[str, Any]]: ...


class StaticFilterResolver:
    """Resolve filters that carry the selection inline.

    Filters::

        {"items": [{"company_name": "Acme", "domain": "acme.com"}, ...],
         "limit": 100}

    Non-dict entries are wrapped as ``{"value": entry}``. Duplicate payloads
    are kept: uploads may legitimately repeat a row.
    """

    async def resolve(
        self, kind: JobKind, filters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        raw = filters.get("items") or []
        if not isinstance(raw, list):
            raise ValueError("filters.items must be a list")

        payloads = [
            entry if isinstance(entry, dict) else {"value": entry} for entry in raw
        ]

        limit = filters.get("limit")
        if limit is not None:
            payloads = payloads[: max(0, int(limit))]
        return payloads
