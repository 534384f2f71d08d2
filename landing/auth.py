from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Request

from landing.errors import AuthError


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def extract_token(
    authorization: Optional[str] = None,
    header_token: Optional[str] = None,
    body_token: Optional[str] = None,
    query_token: Optional[str] = None,
) -> Optional[str]:
    """First non-empty of: Authorization bearer, X-API-Token header, body token, query token."""
    for candidate in (_bearer(authorization), header_token, body_token, query_token):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def check_token(allowed: str, supplied: Optional[str]) -> bool:
    """
    Returns True if:
      - no token is configured (open access), or
      - the supplied token matches the configured one (constant-time compare).
    """
    if not allowed:
        return True
    if not supplied:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), allowed.encode("utf-8"))


def require_token(allowed: str, request: Request, body_token: Optional[str] = None) -> None:
    token = extract_token(
        request.headers.get("authorization"),
        request.headers.get("x-api-token"),
        body_token,
        request.query_params.get("token"),
    )
    if not check_token(allowed, token):
        raise AuthError("invalid or missing token")
