"""Authentication dependencies for the management API."""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from uuid import UUID

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from gateway.config.loader import get_settings
from gateway.errors import TokenInvalid
from gateway.security.tokens import verify_token
from gateway.store import postgres as pg_store
from gateway.utils.sanitize import clip

_authorization_header = APIKeyHeader(name="Authorization", auto_error=False)
_admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


@dataclass(frozen=True)
class TenantPrincipal:
    """The authenticated tenant behind a management API request."""

    id: UUID
    email: str
    plan: str


def _bearer(value: str | None) -> str:
    if not value:
        return ""
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value.strip()


async def require_admin_key(api_key: str | None = Security(_admin_key_header)) -> str:
    """Validate the operator key sent in X-Admin-Key."""
    settings = get_settings()

    if not settings.admin_api_key:
        raise HTTPException(status_code=500, detail="Admin API key not configured on server")
    if not api_key:
        raise HTTPException(status_code=401, detail="Missing X-Admin-Key header")
    if not hmac.compare_digest(api_key.encode(), settings.admin_api_key.encode()):
        raise HTTPException(status_code=403, detail="Invalid admin API key")
    return api_key


async def require_tenant(authorization: str | None = Security(_authorization_header)) -> TenantPrincipal:
    """Validate a tenant session token and load the (active) tenant."""
    settings = get_settings()
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    # One outcome for every failure: bad signature, expiry, unknown or inactive tenant
    claims = verify_token(token, settings.token_secret)
    if claims is None or not claims.get("sub"):
        raise TokenInvalid()
    try:
        tenant_id = UUID(str(claims["sub"]))
    except ValueError:
        raise TokenInvalid() from None

    tenant = await pg_store.get_tenant(tenant_id)
    if tenant is None or tenant.get("status") != "active":
        raise TokenInvalid()
    return TenantPrincipal(id=tenant["id"], email=tenant["email"], plan=tenant["plan"])


def request_meta(request: Request) -> dict[str, str | None]:
    """Client IP and user agent for audit entries (direct peer only)."""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": clip(request.headers.get("user-agent"), 1024) or None,
    }
