"""
Request pipeline for AI completions.

identity key -> payload guard (length, processing, lock, quota) -> clamps ->
grounding -> upstream with retry -> lock release, then one completion log line.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from shared.errors import (
    ConfigurationError,
    ExternalServiceError,
    GatewayError,
    MalformedPayloadError,
    error_for_status,
)
from shared.logging import get_logger, set_identity_context
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, call_with_status_retry
from service_gateway.app.adapters.materials_store import MaterialsStore
from service_gateway.app.adapters.upstream_client import UpstreamClient, response_json
from service_gateway.app.guard import GuardDecision, PayloadGuard, clamp_payload
from service_gateway.app.guard.payload_guard import latest_user_text, requested_top_k
from service_gateway.app.identity import resolve_identity_key
from service_gateway.app.retrieval import RetrievalRanker, render_context


SUBJECT_FIELDS = ("classCode", "code", "subject")
UPSTREAM_FAILED = "Upstream request failed."
UPSTREAM_NOT_CONFIGURED = "Upstream not configured."


@dataclass
class GatewayResult:
    """Status and JSON body to send back to the caller."""

    status: int
    payload: Any
    identity_key: str
    retry_attempts: int = 0

    @property
    def success(self) -> bool:
        return 200 <= self.status < 300


def subject_code(payload: Dict[str, Any]) -> Optional[str]:
    for name in SUBJECT_FIELDS:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def inject_context(payload: Dict[str, Any], context: str) -> Dict[str, Any]:
    """Place rendered materials ahead of the conversation, or in ``context`` for flat payloads."""
    grounded = dict(payload)
    messages = grounded.get("messages")
    if isinstance(messages, list):
        grounded["messages"] = [{"role": "system", "content": context}] + list(messages)
        return grounded

    existing = grounded.get("context")
    if isinstance(existing, str) and existing.strip():
        grounded["context"] = f"{context}\n\n{existing}"
    else:
        grounded["context"] = context
    return grounded


def error_payload(error: GatewayError) -> Dict[str, Any]:
    response = error.to_response()
    body: Dict[str, Any] = {"error": response.message, "code": response.code}
    if response.request_id:
        body["request_id"] = response.request_id
    return body


class GatewayOrchestrator:
    """Runs one AI request through admission, grounding and the upstream call."""

    def __init__(
        self,
        guard: PayloadGuard,
        ranker: RetrievalRanker,
        upstream: UpstreamClient,
        retry_config: Optional[RetryConfig] = None,
        materials_store: Optional[MaterialsStore] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.guard = guard
        self.ranker = ranker
        self.upstream = upstream
        self.retry_config = retry_config or RetryConfig()
        self.materials_store = materials_store
        self.metrics = metrics
        self._sleep = sleep
        self.logger = get_logger("gateway.orchestrator")

    async def handle(
        self,
        route: str,
        headers: Optional[Mapping[str, str]],
        body: Any,
        client_host: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> GatewayResult:
        started = time.perf_counter()
        identity_key = resolve_identity_key(headers, user_id=user_id, client_host=client_host)
        set_identity_context(identity_key)

        result: Optional[GatewayResult] = None
        try:
            result = await self._process(route, body, identity_key)
            return result
        finally:
            self._record_completion(route, identity_key, started, result)

    def reject(
        self,
        route: str,
        headers: Optional[Mapping[str, str]],
        status: int,
        payload: Any,
        client_host: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> GatewayResult:
        """Answer a request refused before it could be read, still recording its completion."""
        started = time.perf_counter()
        identity_key = resolve_identity_key(headers, user_id=user_id, client_host=client_host)
        set_identity_context(identity_key)

        result = GatewayResult(status=status, payload=payload, identity_key=identity_key)
        self._record_completion(route, identity_key, started, result)
        return result

    async def _process(self, route: str, body: Any, identity_key: str) -> GatewayResult:
        if not isinstance(body, dict):
            self.logger.error(
                "Request body is not a JSON object",
                route=route,
                body_type=type(body).__name__,
            )
            return self._failure(MalformedPayloadError("Invalid request payload."), identity_key)

        if not self.upstream.configured:
            self.logger.error("Upstream API key missing", route=route)
            return self._failure(ConfigurationError(UPSTREAM_NOT_CONFIGURED), identity_key)

        decision = await self.guard.evaluate(body, identity_key, route=route)
        if not decision.ok:
            return self._failure(error_for_status(decision.status, decision.message), identity_key)

        try:
            payload = clamp_payload(body, decision)
            payload = await self._ground(payload, decision, route)
            return await self._forward(payload, route, identity_key)
        finally:
            await decision.release()

    async def _ground(self, payload: Dict[str, Any], decision: GuardDecision, route: str) -> Dict[str, Any]:
        code = subject_code(payload)
        if code is None or self.materials_store is None:
            return payload

        query = latest_user_text(payload)
        if not query.strip():
            return payload

        materials = await self.materials_store.get_materials(code)
        selection = self.ranker.rank(query, materials, max_chunks=requested_top_k(payload))
        if self.metrics is not None:
            self.metrics.observe_histogram("retrieval_chunks_selected", len(selection))

        if selection.is_empty:
            self.logger.info("No grounding available", route=route, subject_code=code)
            return payload

        self.logger.info(
            "Grounding attached",
            route=route,
            subject_code=code,
            chunks=len(selection),
            chars=selection.total_chars,
        )
        return inject_context(payload, decision.clamp_context(render_context(selection)))

    async def _forward(self, payload: Dict[str, Any], route: str, identity_key: str) -> GatewayResult:
        try:
            outcome = await call_with_status_retry(
                lambda: self.upstream.complete(payload),
                self.retry_config,
                route=route,
                identity_key=identity_key,
                sleep=self._sleep,
            )
        except ConfigurationError as e:
            self.logger.error("Upstream not configured", route=route, details=e.details)
            return self._failure(e, identity_key)
        except httpx.HTTPError as e:
            self.logger.error("Upstream request failed", route=route, error=str(e))
            return self._failure(
                ExternalServiceError("upstream", UPSTREAM_FAILED, {"error_type": type(e).__name__}),
                identity_key,
            )

        response = outcome.response
        return GatewayResult(
            status=response.status_code,
            payload=response_json(response),
            identity_key=identity_key,
            retry_attempts=outcome.retry_attempts,
        )

    def _failure(self, error: GatewayError, identity_key: str) -> GatewayResult:
        return GatewayResult(status=error.status_code, payload=error_payload(error), identity_key=identity_key)

    def _record_completion(self, route: str, identity_key: str, started: float,
                           result: Optional[GatewayResult]) -> None:
        duration = time.perf_counter() - started
        status = result.status if result is not None else 500
        retry_attempts = result.retry_attempts if result is not None else 0

        self.logger.info(
            "AI gateway request completed",
            route=route,
            identity_key=identity_key,
            duration_ms=round(duration * 1000, 2),
            success=result.success if result is not None else False,
            status=status,
            retry_attempts=retry_attempts,
        )
        if self.metrics is not None:
            self.metrics.record_ai_request(route, status, duration, retry_attempts)
