"""
Caller identity resolution for coordination partitioning.
"""

from service_gateway.app.identity.key_resolver import (
    resolve_identity_key,
    unverified_subject_from_bearer,
)

__all__ = ["resolve_identity_key", "unverified_subject_from_bearer"]
