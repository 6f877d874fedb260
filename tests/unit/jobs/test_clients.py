"""Tests for the HTTP enrichment client."""

import json

import httpx
import pytest

from bulkops.config import Settings
from bulkops.jobs.clients import HttpEnrichmentClient, build_registry, create_http_client
from bulkops.jobs.types import JobKind


def mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://enrichment.test"
    )


class TestHttpEnrichmentClient:
    @pytest.mark.asyncio
    async def test_posts_payload_to_kind_path(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"industry": "Software"})

        async with mock_http(handler) as http:
            client = HttpEnrichmentClient(http, JobKind.CATEGORIZATION)
            result = await client.enrich({"company_name": "Acme"})

        assert result == {"industry": "Software"}
        assert seen == {"path": "/categorization", "body": {"company_name": "Acme"}}

    @pytest.mark.asyncio
    async def test_wraps_non_object_body(self):
        async with mock_http(lambda r: httpx.Response(200, json=120)) as http:
            result = await HttpEnrichmentClient(http, JobKind.EMPLOYEE_COUNT).enrich({})
        assert result == {"value": 120}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        async with mock_http(lambda r: httpx.Response(429, text="slow down")) as http:
            client = HttpEnrichmentClient(http, JobKind.RESEARCH)
            with pytest.raises(httpx.HTTPStatusError):
                await client.enrich({})


class TestFactories:
    def test_no_base_url_means_no_client(self):
        assert create_http_client(Settings(enrichment_base_url=None)) is None

    @pytest.mark.asyncio
    async def test_client_carries_api_key(self):
        http = create_http_client(
            Settings(enrichment_base_url="http://enrichment.test/", enrichment_api_key="k")
        )
        try:
            assert http.headers["Authorization"] == "Bearer k"
            assert http.base_url.host == "enrichment.test"
        finally:
            await http.aclose()

    def test_build_registry_registers_every_kind(self):
        http = mock_http(lambda r: httpx.Response(200, json={}))
        registry = build_registry(http)
        assert set(registry.kinds()) == set(JobKind)

    def test_build_registry_without_http_is_empty(self):
        assert build_registry(None).kinds() == []
