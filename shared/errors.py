"""
Shared error handling for the Grounded AI Gateway.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class GatewayError(Exception):
    """Base exception for gateway services."""

    status_code: int = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(GatewayError):
    """Client payload failed validation."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ConflictError(GatewayError):
    """Request conflicts with in-flight background work."""

    status_code = 409

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT_ERROR", message, details)


class RateLimitError(GatewayError):
    """Rate limiting and lock contention errors."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_ERROR", message, details)


class ConfigurationError(GatewayError):
    """Required configuration is missing or invalid."""

    def __init__(self, message: str = "Service misconfigured", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class MalformedPayloadError(GatewayError):
    """Payload shape the gateway cannot interpret."""

    def __init__(self, message: str = "Invalid request payload", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_PAYLOAD", message, details)


class ExternalServiceError(GatewayError):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", message, {"service": service, **(details or {})})


class CoordinationStoreError(GatewayError):
    """The shared coordination store could not be reached or answered with an error."""

    status_code = 503

    def __init__(self, message: str = "Coordination store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("COORDINATION_STORE_ERROR", message, details)


_STATUS_ERRORS = {
    400: ValidationError,
    409: ConflictError,
    429: RateLimitError,
}


def error_for_status(status_code: int, message: str) -> GatewayError:
    """Build the error type that matches an admission status code."""
    error_cls = _STATUS_ERRORS.get(status_code)
    if error_cls is None:
        return GatewayError("GATEWAY_ERROR", message, status_code=status_code)
    return error_cls(message)
