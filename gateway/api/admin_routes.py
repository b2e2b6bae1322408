"""Operator endpoints for tenant accounts. All require X-Admin-Key."""

from __future__ import annotations

from typing import Any
from uuid import UUID

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Depends

from gateway.api.auth import require_admin_key
from gateway.api.usage_routes import get_accountant
from gateway.audit.recorder import get_recorder
from gateway.config import audit_actions
from gateway.config.plans import get_plan_table
from gateway.errors import ResourceNotFound
from gateway.middleware.rate_limiter import RateAccountant
from gateway.models.tenant import TenantResponse
from gateway.security.credentials import evict_cached_keys
from gateway.store import api_keys as api_key_store
from gateway.store import postgres as pg_store
from gateway.store.postgres import StoreUnavailable

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/admin/tenants",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


def _to_response(row: dict[str, Any]) -> TenantResponse:
    return TenantResponse(**{k: row[k] for k in TenantResponse.model_fields})


@router.get("", response_model=list[TenantResponse])
async def list_tenants():
    rows = await pg_store.list_tenants()
    return [_to_response(row) for row in rows]


@router.post("/{tenant_id}/suspend", response_model=TenantResponse)
async def suspend_tenant(tenant_id: UUID):
    """Suspend a tenant. Its sessions and API keys stop resolving immediately."""
    row = await pg_store.update_tenant(tenant_id, status="suspended")
    if row is None:
        raise ResourceNotFound("Tenant not found")
    await evict_cached_keys(await api_key_store.active_key_digests(tenant_id))
    get_recorder().record_system_action(tenant_id, audit_actions.TENANT_SUSPEND)
    logger.info("tenant_suspended", tenant_id=str(tenant_id))
    return _to_response(row)


@router.delete("/{tenant_id}", status_code=204)
async def delete_tenant(tenant_id: UUID):
    """Delete a tenant. Key digests are collected first; the cascade removes the rows."""
    digests = await api_key_store.active_key_digests(tenant_id)
    if not await pg_store.delete_tenant(tenant_id):
        raise ResourceNotFound("Tenant not found")
    await evict_cached_keys(digests)
    logger.info("tenant_deleted", tenant_id=str(tenant_id))


@router.post("/{tenant_id}/usage/reset", status_code=204)
async def reset_tenant_usage(
    tenant_id: UUID,
    accountant: RateAccountant = Depends(get_accountant),
):
    """Clear the tenant's current rate window and billing-period counters."""
    tenant = await pg_store.get_tenant(tenant_id)
    if tenant is None:
        raise ResourceNotFound("Tenant not found")
    limits = get_plan_table().get_limit(tenant["plan"])
    try:
        await accountant.reset_usage(str(tenant_id), limits.window_seconds)
    except (aioredis.RedisError, OSError) as exc:
        logger.error("usage_reset_failed", tenant_id=str(tenant_id), error=str(exc))
        raise StoreUnavailable("Redis error") from exc
    get_recorder().record_system_action(tenant_id, audit_actions.USAGE_RESET)
    logger.info("tenant_usage_reset", tenant_id=str(tenant_id))
