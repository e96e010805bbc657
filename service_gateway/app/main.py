"""
AI gateway service: admission control and grounding in front of the completion API.
"""

import json
from typing import Optional

import redis.asyncio as redis
from fastapi import Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.retry import RetryConfig
from service_gateway.app.adapters.materials_store import MaterialsStore, RedisMaterialsStore
from service_gateway.app.adapters.upstream_client import UpstreamClient
from service_gateway.app.coordination import Coordinator
from service_gateway.app.coordination.redis_backend import (
    RedisMutex,
    RedisRateLimiter,
    create_redis_client,
)
from service_gateway.app.guard import PayloadGuard
from service_gateway.app.orchestrator import GatewayOrchestrator
from service_gateway.app.retrieval import RetrievalRanker


CHAT_ROUTE = "/api/chat"


class GatewayService(BaseService):
    """AI gateway service implementation."""

    cors_methods = ["POST", "OPTIONS"]

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        redis_client: Optional[redis.Redis] = None,
        upstream_client: Optional[UpstreamClient] = None,
        materials_store: Optional[MaterialsStore] = None,
    ):
        super().__init__("gateway", 8000, config=config or get_config("gateway", 8000))

        if redis_client is None and self.config.redis_url:
            redis_client = create_redis_client(self.config.redis_url, self.config.redis_socket_timeout)
        self.redis_client = redis_client

        mutex = rate_limiter = None
        if self.redis_client is not None:
            mutex = RedisMutex(
                self.redis_client,
                ttl_seconds=self.config.lock_ttl_seconds,
                key_prefix=self.config.coordination_key_prefix,
            )
            rate_limiter = RedisRateLimiter(
                self.redis_client,
                limit=self.config.rate_limit,
                window_seconds=self.config.rate_window_seconds,
                key_prefix=self.config.coordination_key_prefix,
            )
            if materials_store is None:
                materials_store = RedisMaterialsStore(self.redis_client)

        self.coordinator = Coordinator(
            mutex=mutex,
            rate_limiter=rate_limiter,
            lock_ttl_seconds=self.config.lock_ttl_seconds,
            rate_limit=self.config.rate_limit,
            rate_window_seconds=self.config.rate_window_seconds,
            metrics=self.metrics,
        )
        self.guard = PayloadGuard(
            self.coordinator,
            max_user_message_chars=self.config.max_user_message_chars,
            max_top_k=self.config.max_top_k,
            max_context_chars=self.config.max_context_chars,
        )
        self.ranker = RetrievalRanker(
            max_chunks=self.config.retrieval_max_chunks,
            char_budget=self.config.retrieval_char_budget,
            chunk_char_cap=self.config.retrieval_chunk_char_cap,
            max_keywords=self.config.retrieval_max_keywords,
        )
        self.upstream_client = upstream_client or UpstreamClient(
            self.config.upstream_url,
            self.config.upstream_api_key,
            timeout=self.config.upstream_timeout,
        )
        self.materials_store = materials_store
        self.orchestrator = GatewayOrchestrator(
            guard=self.guard,
            ranker=self.ranker,
            upstream=self.upstream_client,
            retry_config=RetryConfig.from_milliseconds(
                self.config.upstream_max_attempts,
                self.config.upstream_base_backoff_ms,
                self.config.upstream_jitter_ms,
            ),
            materials_store=self.materials_store,
            metrics=self.metrics,
        )

        @self.app.on_event("startup")
        async def _startup():
            self.logger.info(
                "Gateway starting",
                coordination=self.coordinator.mode,
                upstream_configured=self.upstream_client.configured,
                grounding=self.materials_store is not None,
            )

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.upstream_client.close()
            if self.redis_client is not None:
                await self.redis_client.aclose()

        self._setup_gateway_routes()

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        @self.app.post(CHAT_ROUTE)
        async def chat(request: Request):
            """Admit, ground and forward one chat completion request."""
            client_host = request.client.host if request.client else None
            try:
                body = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                result = self.orchestrator.reject(
                    CHAT_ROUTE,
                    request.headers,
                    400,
                    {"error": "Invalid JSON body."},
                    client_host=client_host,
                )
                return JSONResponse(status_code=result.status, content=result.payload)

            result = await self.orchestrator.handle(
                CHAT_ROUTE,
                request.headers,
                body,
                client_host=client_host,
            )
            return JSONResponse(status_code=result.status, content=result.payload)

    async def _check_dependencies(self):
        """Check gateway dependencies."""
        dependencies = {"coordination": self.coordinator.mode}

        if self.redis_client is None:
            dependencies["redis"] = "not_configured"
        else:
            try:
                await self.redis_client.ping()
                dependencies["redis"] = "ok"
            except (RedisError, OSError) as e:
                self.logger.warning("Redis health check failed", error=str(e))
                dependencies["redis"] = "error"

        dependencies["upstream"] = "configured" if self.upstream_client.configured else "not_configured"
        return dependencies


def create_app(config: Optional[ServiceConfig] = None):
    """Create FastAPI application."""
    service = GatewayService(config=config)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
