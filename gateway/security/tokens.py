"""Signed, time-bounded identity tokens (HS256 JWT).

``verify_token`` collapses every failure into ``None`` so callers cannot tell
a bad signature from an expired or malformed token.
"""

from __future__ import annotations

import time
from typing import Any

import jwt
import structlog

logger = structlog.get_logger()

_ALGORITHM = "HS256"
_RESERVED_CLAIMS = frozenset({"iat", "exp"})


def issue_token(claims: dict[str, Any], secret: str, ttl_seconds: int) -> str:
    """Issue a token carrying *claims* plus ``iat``/``exp``.

    A zero or negative TTL produces a token that is already expired.
    """
    now = int(time.time())
    payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
    payload["iat"] = now
    payload["exp"] = now + int(ttl_seconds)
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def verify_token(token: str, secret: str) -> dict[str, Any] | None:
    """Return the token's claims, or ``None`` if it does not verify."""
    if not isinstance(token, str) or not token or not secret:
        return None
    if token.count(".") != 2:
        return None
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[_ALGORITHM],
            options={"require": ["exp", "iat"]},
        )
    except jwt.PyJWTError:
        return None
    except (ValueError, TypeError):
        return None

    iat, exp = claims.get("iat"), claims.get("exp")
    if isinstance(iat, bool) or isinstance(exp, bool):
        return None
    if not isinstance(iat, (int, float)) or not isinstance(exp, (int, float)):
        return None
    if exp <= iat:
        return None
    return claims


def session_claims(tenant: dict[str, Any]) -> dict[str, Any]:
    """Business claims carried by a tenant session token."""
    return {
        "sub": str(tenant["id"]),
        "email": tenant.get("email", ""),
        "plan": tenant.get("plan", ""),
    }
