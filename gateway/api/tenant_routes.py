"""Tenant account, upstream connection and API key endpoints."""

from __future__ import annotations

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from gateway.api.auth import TenantPrincipal, request_meta, require_tenant
from gateway.audit.recorder import get_recorder
from gateway.config import audit_actions
from gateway.config.loader import get_settings
from gateway.config.plans import get_plan_table
from gateway.errors import ConnectionLimitReached, ResourceNotFound
from gateway.models.connection import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    ConnectionCreate,
    ConnectionResponse,
    SecretUpdate,
)
from gateway.models.tenant import SessionResponse, TenantLogin, TenantRegister, TenantResponse
from gateway.security import cipher
from gateway.security.api_keys import generate_api_key
from gateway.security.credentials import evict_cached_keys
from gateway.security.passwords import hash_password, needs_rehash, verify_password
from gateway.security.tokens import issue_token, session_claims
from gateway.store import api_keys as api_key_store
from gateway.store import connections as connection_store
from gateway.store import postgres as pg_store
from gateway.store.postgres import DuplicateTenant

logger = structlog.get_logger()

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
router = APIRouter(prefix="/api", tags=["connections"])


def _session(tenant: dict) -> SessionResponse:
    settings = get_settings()
    if not settings.token_secret:
        raise HTTPException(status_code=500, detail="Token secret not configured on server")
    token = issue_token(session_claims(tenant), settings.token_secret, settings.token_ttl_seconds)
    return SessionResponse(
        token=token,
        expires_in=settings.token_ttl_seconds,
        tenant=TenantResponse(**{k: tenant[k] for k in TenantResponse.model_fields}),
    )


@auth_router.post("/register", status_code=201, response_model=SessionResponse)
async def register(body: TenantRegister, request: Request):
    """Create a tenant on the default plan and return a session token."""
    plan = get_plan_table().default_plan
    try:
        tenant = await pg_store.create_tenant(body.email, hash_password(body.password), plan)
    except DuplicateTenant:
        raise HTTPException(status_code=409, detail="Email already registered")
    logger.info("tenant_registered", tenant_id=str(tenant["id"]), plan=plan)
    get_recorder().record_tenant_action(tenant["id"], audit_actions.AUTH_REGISTER, **request_meta(request))
    return _session(tenant)


@auth_router.post("/login", response_model=SessionResponse)
async def login(body: TenantLogin, request: Request):
    tenant = await pg_store.get_tenant_credentials(body.email)
    if tenant is None or not verify_password(body.password, tenant["password_hash"]):
        if tenant is not None:
            get_recorder().record_tenant_action(
                tenant["id"], audit_actions.AUTH_LOGIN_FAILED, **request_meta(request),
            )
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if tenant["status"] != "active":
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if needs_rehash(tenant["password_hash"]):
        await pg_store.update_tenant(tenant["id"], password_hash=hash_password(body.password))
        logger.info("tenant_password_rehashed", tenant_id=str(tenant["id"]))

    get_recorder().record_tenant_action(tenant["id"], audit_actions.AUTH_LOGIN, **request_meta(request))
    return _session(tenant)


# --- Connections ---

def _master_key() -> str:
    settings = get_settings()
    if not settings.master_key:
        raise HTTPException(status_code=500, detail="Master key not configured on server")
    return settings.master_key


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(tenant: TenantPrincipal = Depends(require_tenant)):
    rows = await connection_store.list_connections(tenant.id)
    return [ConnectionResponse.from_row(r) for r in rows]


@router.post("/connections", status_code=201, response_model=ConnectionResponse)
async def create_connection(
    body: ConnectionCreate,
    request: Request,
    tenant: TenantPrincipal = Depends(require_tenant),
):
    """Register an upstream site. Identity and secrets are encrypted before storage."""
    limits = get_plan_table().get_limit(tenant.plan)
    current = await connection_store.count_connections(tenant.id)
    if not limits.allows_more_connections(current):
        raise ConnectionLimitReached(
            f"Connection limit reached ({limits.max_connections}) for your plan"
        )

    master_key = _master_key()
    row = await connection_store.create_connection(
        tenant.id,
        name=body.name,
        base_url=body.base_url,
        identity_envelope=cipher.encrypt(body.identity, master_key),
        secret_envelope=cipher.encrypt(body.secret, master_key),
        aux_secret_envelope=cipher.encrypt_optional(body.aux_secret, master_key),
    )
    get_recorder().record_tenant_action(
        tenant.id,
        audit_actions.CONNECTION_CREATE,
        resource_type="connection",
        resource_id=str(row["id"]),
        details={"name": body.name, "base_url": body.base_url},
        **request_meta(request),
    )
    return ConnectionResponse.from_row(row)


@router.put("/connections/{connection_id}/secret", response_model=ConnectionResponse)
async def replace_connection_secret(
    connection_id: UUID,
    body: SecretUpdate,
    request: Request,
    tenant: TenantPrincipal = Depends(require_tenant),
):
    master_key = _master_key()
    row = await connection_store.replace_secret(
        tenant.id,
        connection_id,
        secret_envelope=cipher.encrypt(body.secret, master_key),
        aux_secret_envelope=cipher.encrypt_optional(body.aux_secret, master_key),
    )
    if row is None:
        raise ResourceNotFound("Connection not found")
    # Cached key records carry the old envelope
    await evict_cached_keys(await api_key_store.active_key_digests(tenant.id, connection_id))
    get_recorder().record_tenant_action(
        tenant.id,
        audit_actions.CONNECTION_UPDATE_SECRET,
        resource_type="connection",
        resource_id=str(connection_id),
        **request_meta(request),
    )
    return ConnectionResponse.from_row(row)


@router.delete("/connections/{connection_id}", status_code=204)
async def delete_connection(
    connection_id: UUID,
    request: Request,
    tenant: TenantPrincipal = Depends(require_tenant),
):
    revoked = await connection_store.delete_connection(tenant.id, connection_id)
    if revoked is None:
        raise ResourceNotFound("Connection not found")
    await evict_cached_keys(revoked)
    get_recorder().record_tenant_action(
        tenant.id,
        audit_actions.CONNECTION_DELETE,
        resource_type="connection",
        resource_id=str(connection_id),
        details={"keys_revoked": len(revoked)},
        **request_meta(request),
    )


# --- API keys ---

@router.get("/connections/{connection_id}/keys", response_model=list[ApiKeyResponse])
async def list_keys(connection_id: UUID, tenant: TenantPrincipal = Depends(require_tenant)):
    if await connection_store.get_connection(tenant.id, connection_id) is None:
        raise ResourceNotFound("Connection not found")
    return [ApiKeyResponse(**r) for r in await api_key_store.list_api_keys(tenant.id, connection_id)]


@router.post("/connections/{connection_id}/keys", status_code=201, response_model=ApiKeyCreatedResponse)
async def create_key(
    connection_id: UUID,
    body: ApiKeyCreate,
    request: Request,
    tenant: TenantPrincipal = Depends(require_tenant),
):
    """Issue an API key bound to a connection. The plaintext is returned only here."""
    connection = await connection_store.get_connection(tenant.id, connection_id)
    if connection is None or connection["status"] != "active":
        raise ResourceNotFound("Connection not found")

    generated = generate_api_key()
    row = await api_key_store.create_api_key(
        tenant.id,
        connection_id=connection_id,
        key_digest=generated.digest,
        key_prefix=generated.prefix,
        name=body.name.strip(),
    )
    get_recorder().record_tenant_action(
        tenant.id,
        audit_actions.API_KEY_CREATE,
        resource_type="api_key",
        resource_id=str(row["id"]),
        details={"key_prefix": generated.prefix, "connection_id": str(connection_id)},
        **request_meta(request),
    )
    return ApiKeyCreatedResponse(**row, api_key=generated.plaintext)


@router.delete("/keys/{key_id}", status_code=204)
async def revoke_key(
    key_id: UUID,
    request: Request,
    tenant: TenantPrincipal = Depends(require_tenant),
):
    row = await api_key_store.revoke_api_key(tenant.id, key_id)
    if row is None:
        raise ResourceNotFound("API key not found")
    await evict_cached_keys([row["key_digest"]])
    get_recorder().record_tenant_action(
        tenant.id,
        audit_actions.API_KEY_REVOKE,
        resource_type="api_key",
        resource_id=str(key_id),
        details={"key_prefix": row["key_prefix"]},
        **request_meta(request),
    )

