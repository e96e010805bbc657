"""
Per-identity coordination for the gateway.

Holds the lease mutex and sliding-window limiter in two flavours, Redis-backed
for fleet-wide correctness and in-process for degraded operation, behind the
``Coordinator`` capability that picks between them.
"""

from service_gateway.app.coordination.coordinator import Coordinator
from service_gateway.app.coordination.models import LockHandle, LockLease, RateDecision

__all__ = ["Coordinator", "LockHandle", "LockLease", "RateDecision"]
