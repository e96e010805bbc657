"""
Unit tests for the upstream client and materials store adapters.
"""

import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError

from service_gateway.app.adapters import RedisMaterialsStore, UpstreamClient
from service_gateway.app.adapters.upstream_client import response_json
from shared.errors import ConfigurationError
from shared.test_helpers import encode_class_record, test_data_factory


class TestUpstreamClient:
    """Test cases for UpstreamClient."""

    @pytest.fixture
    def captured(self):
        return []

    @pytest.fixture
    def upstream(self, captured):
        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json=test_data_factory.create_completion_response())

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return UpstreamClient("https://api.test/", "sk-test", client=client)

    @pytest.mark.asyncio
    async def test_posts_completion_with_bearer_key(self, upstream, captured):
        response = await upstream.complete({"model": "gpt-4o-mini", "messages": []})

        assert response.status_code == 200
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert json.loads(request.content) == {"model": "gpt-4o-mini", "messages": []}

    @pytest.mark.asyncio
    async def test_error_status_returned_not_raised(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        upstream = UpstreamClient("https://api.test", "sk-test", client=client)

        response = await upstream.complete({})

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        upstream = UpstreamClient("https://api.test", None)

        assert not upstream.configured
        with pytest.raises(ConfigurationError):
            await upstream.complete({})

        await upstream.close()

    def test_non_json_body_becomes_empty_object(self):
        assert response_json(httpx.Response(502, text="<html>Bad gateway</html>")) == {}
        assert response_json(httpx.Response(200, json={"id": "x"})) == {"id": "x"}


class TestRedisMaterialsStore:
    """Test cases for RedisMaterialsStore."""

    @pytest.fixture
    def mock_redis(self):
        client = MagicMock()
        client.get = AsyncMock(return_value=encode_class_record(test_data_factory.create_class_record()))
        return client

    @pytest.fixture
    def store(self, mock_redis):
        return RedisMaterialsStore(mock_redis)

    @pytest.mark.asyncio
    async def test_reads_normalized_class_key(self, store, mock_redis):
        materials = await store.get_materials("  bio101 ")

        mock_redis.get.assert_awaited_once_with("class:BIO101")
        assert [m.name for m in materials] == ["Cell Biology Notes.pdf", "Lecture 3.txt"]
        assert len(materials[0].page_segments) == 2
        assert materials[1].page_segments == ()

    @pytest.mark.asyncio
    async def test_missing_class(self, store, mock_redis):
        mock_redis.get.return_value = None
        assert await store.get_materials("NOPE") == []

    @pytest.mark.asyncio
    async def test_blank_code_skips_lookup(self, store, mock_redis):
        assert await store.get_materials("   ") == []
        mock_redis.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_record_without_materials(self, store, mock_redis):
        mock_redis.get.return_value = json.dumps({"code": "BIO101"})
        assert await store.get_materials("BIO101") == []

    @pytest.mark.asyncio
    async def test_store_failure_means_no_grounding(self, store, mock_redis):
        mock_redis.get.side_effect = RedisConnectionError("connection refused")
        assert await store.get_materials("BIO101") == []

    @pytest.mark.asyncio
    async def test_corrupt_record_means_no_grounding(self, store, mock_redis):
        mock_redis.get.return_value = "{not json"
        assert await store.get_materials("BIO101") == []
