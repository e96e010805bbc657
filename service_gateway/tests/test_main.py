"""
Unit tests for Gateway main service.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from service_gateway.app.adapters import UpstreamClient
from service_gateway.app.main import CHAT_ROUTE, GatewayService
from shared.config import get_config
from shared.test_helpers import bearer_headers, create_mock_jwt_token, test_data_factory


class TestGatewayService:
    """Test cases for GatewayService."""

    @pytest.fixture
    def upstream_requests(self):
        return []

    @pytest.fixture
    def upstream_client(self, upstream_requests):
        def handler(request: httpx.Request) -> httpx.Response:
            upstream_requests.append(json.loads(request.content))
            return httpx.Response(200, json=test_data_factory.create_completion_response())

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return UpstreamClient("https://api.test", "sk-test", client=client)

    @pytest.fixture
    def config(self):
        return get_config("gateway", 8000, redis_url=None, upstream_api_key="sk-test", rate_limit=3)

    @pytest.fixture
    def gateway_service(self, config, upstream_client):
        """Create GatewayService instance."""
        return GatewayService(config=config, upstream_client=upstream_client)

    @pytest.fixture
    def client(self, gateway_service):
        """Create test client."""
        return TestClient(gateway_service.app)

    def test_service_wiring(self, gateway_service):
        assert gateway_service.service_name == "gateway"
        assert gateway_service.redis_client is None
        assert gateway_service.materials_store is None
        assert gateway_service.coordinator.mode == "memory"
        assert gateway_service.orchestrator.retry_config.max_attempts == 5

    def test_chat_forwards_to_upstream(self, client, upstream_requests):
        body = test_data_factory.create_chat_payload()

        response = client.post(CHAT_ROUTE, json=body)

        assert response.status_code == 200
        assert response.json()["choices"][0]["message"]["role"] == "assistant"
        assert upstream_requests == [body]

    def test_invalid_json(self, client, upstream_requests):
        response = client.post(
            CHAT_ROUTE,
            content="{not json",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON body."}
        assert upstream_requests == []

    def test_invalid_json_is_counted(self, client, gateway_service):
        client.post(
            CHAT_ROUTE,
            content="{not json",
            headers={"content-type": "application/json", "x-forwarded-for": "198.51.100.7"},
        )

        registry = gateway_service.metrics.registry
        assert registry.get_sample_value("ai_requests_total", {"route": CHAT_ROUTE, "status": "400"}) == 1.0

    def test_non_object_json(self, client):
        response = client.post(CHAT_ROUTE, json=["hello"])

        assert response.status_code == 500
        assert response.json()["code"] == "MALFORMED_PAYLOAD"

    def test_message_length_boundary(self, client):
        ok = client.post(CHAT_ROUTE, json=test_data_factory.create_chat_payload("a" * 4000))
        too_long = client.post(CHAT_ROUTE, json=test_data_factory.create_chat_payload("a" * 4001))

        assert ok.status_code == 200
        assert too_long.status_code == 400
        assert too_long.json()["error"] == "Message too long."

    def test_rate_limit_per_identity(self, client):
        alice = bearer_headers(create_mock_jwt_token("alice"))
        bob = bearer_headers(create_mock_jwt_token("bob"))
        body = test_data_factory.create_chat_payload()

        statuses = [client.post(CHAT_ROUTE, json=body, headers=alice).status_code for _ in range(4)]
        other = client.post(CHAT_ROUTE, json=body, headers=bob)

        assert statuses == [200, 200, 200, 429]
        assert other.status_code == 200

    def test_rate_limit_message(self, client):
        body = test_data_factory.create_chat_payload()
        for _ in range(3):
            client.post(CHAT_ROUTE, json=body)

        response = client.post(CHAT_ROUTE, json=body)

        assert response.status_code == 429
        assert response.json()["error"] == "Rate limit exceeded."

    def test_health_reports_coordination_mode(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert data["dependencies"] == {
            "coordination": "memory",
            "redis": "not_configured",
            "upstream": "configured",
        }

    def test_metrics_endpoint(self, client):
        client.post(CHAT_ROUTE, json=test_data_factory.create_chat_payload())

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'ai_requests_total{route="/api/chat",status="200"} 1.0' in response.text

    def test_cors_preflight(self, client):
        response = client.options(
            CHAT_ROUTE,
            headers={
                "Origin": "https://classroom.example",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 200
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_unconfigured_upstream(self, config):
        config.upstream_api_key = None
        service = GatewayService(config=config)

        response = TestClient(service.app).post(CHAT_ROUTE, json=test_data_factory.create_chat_payload())

        assert response.status_code == 500
        assert response.json()["error"] == "Upstream not configured."

    def test_shutdown_closes_upstream(self, gateway_service):
        with TestClient(gateway_service.app) as client:
            assert client.get("/health").status_code == 200

        assert gateway_service.upstream_client._client.is_closed
