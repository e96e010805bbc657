"""
Shared utilities for the Grounded AI Gateway.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/identity correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Status-driven retry with exponential backoff and jitter
- base_service: FastAPI service skeleton (health, metrics, error handlers)

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service packages into shared/.
"""
