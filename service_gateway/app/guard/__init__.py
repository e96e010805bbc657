"""
Payload admission guard and context clamps.
"""

from service_gateway.app.guard.payload_guard import (
    GuardDecision,
    PayloadGuard,
    clamp_context,
    clamp_payload,
    clamp_top_k,
)

__all__ = ["GuardDecision", "PayloadGuard", "clamp_context", "clamp_payload", "clamp_top_k"]
