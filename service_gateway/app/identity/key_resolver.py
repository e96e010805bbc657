"""
Derive the identity key that partitions all coordination state.

Bearer tokens are decoded WITHOUT signature verification. The subject read
here is only a bucketing key for locks and quotas; it must never be used to
authorize anything. Verification belongs to the identity provider in front of
this service.
"""

from __future__ import annotations

from typing import Mapping, Optional

from jose import JWTError, jwt


PROXY_ADDRESS_HEADERS = (
    ("x-forwarded-for", True),
    ("x-real-ip", False),
    ("cf-connecting-ip", False),
    ("x-vercel-forwarded-for", True),
)

UNKNOWN_ADDRESS = "unknown"


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        for key, candidate in headers.items():
            if isinstance(key, str) and key.lower() == name:
                value = candidate
                break
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if not isinstance(value, str):
        return None
    return value.strip() or None


def unverified_subject_from_bearer(authorization: Optional[str]) -> Optional[str]:
    """Read ``sub`` from a bearer token's payload without verifying it."""
    if not authorization or not authorization.startswith("Bearer "):
        return None

    token = authorization[len("Bearer "):].strip()
    if not token:
        return None

    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None

    subject = claims.get("sub") if isinstance(claims, dict) else None
    if isinstance(subject, str) and subject.strip():
        return subject.strip()
    return None


def client_address(headers: Optional[Mapping[str, str]], client_host: Optional[str] = None) -> str:
    """Best-effort caller address from proxy headers, then the socket peer."""
    for name, is_chain in PROXY_ADDRESS_HEADERS:
        value = _header(headers, name)
        if not value:
            continue
        if is_chain:
            value = value.split(",")[0].strip()
        if value:
            return value

    if isinstance(client_host, str) and client_host.strip():
        return client_host.strip()
    return UNKNOWN_ADDRESS


def resolve_identity_key(
    headers: Optional[Mapping[str, str]],
    user_id: Optional[str] = None,
    client_host: Optional[str] = None,
) -> str:
    """Return ``user:<id>`` for identifiable callers, otherwise ``ip:<address>``."""
    explicit = user_id.strip() if isinstance(user_id, str) and user_id.strip() else None
    subject = explicit or unverified_subject_from_bearer(_header(headers, "authorization"))
    if subject:
        return f"user:{subject}"
    return f"ip:{client_address(headers, client_host)}"
