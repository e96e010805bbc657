"""
Shared metrics configuration for the Grounded AI Gateway.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, generate_latest
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Each collector owns its registry so several service instances can coexist
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "gateway":
            self._setup_gateway_metrics()

    def _setup_gateway_metrics(self):
        """Set up gateway-specific metrics."""
        self._metrics["ai_requests_total"] = Counter(
            "ai_requests_total",
            "AI gateway invocations by final status",
            ["route", "status"],
            registry=self.registry
        )

        self._metrics["ai_request_duration_seconds"] = Histogram(
            "ai_request_duration_seconds",
            "AI gateway invocation duration in seconds",
            ["route"],
            registry=self.registry
        )

        self._metrics["upstream_retries_total"] = Counter(
            "upstream_retries_total",
            "Upstream retries performed",
            ["route"],
            registry=self.registry
        )

        self._metrics["coordination_fallbacks_total"] = Counter(
            "coordination_fallbacks_total",
            "Switches from the shared store to in-process coordination",
            ["component"],
            registry=self.registry
        )

        self._metrics["retrieval_chunks_selected"] = Histogram(
            "retrieval_chunks_selected",
            "Chunks selected to ground a request",
            buckets=(0, 1, 2, 4, 6, 8, 10, 16),
            registry=self.registry
        )

    def render_latest(self) -> bytes:
        """Render the registry in Prometheus exposition format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_ai_request(self, route: str, status: int, duration: float, retry_attempts: int):
        """Record one completed gateway invocation."""
        self._metrics["ai_requests_total"].labels(route=route, status=str(status)).inc()
        self._metrics["ai_request_duration_seconds"].labels(route=route).observe(duration)
        if retry_attempts:
            self._metrics["upstream_retries_total"].labels(route=route).inc(retry_attempts)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            if labels:
                metric = metric.labels(**labels)
            metric.observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
