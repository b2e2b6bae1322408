"""Usage reporting for the authenticated tenant."""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog
from fastapi import APIRouter, Depends

from gateway.api.auth import TenantPrincipal, require_tenant
from gateway.config.plans import get_plan_table
from gateway.middleware.rate_limiter import RateAccountant
from gateway.models.usage import UsageResponse
from gateway.store.postgres import StoreUnavailable
from gateway.store.redis import get_redis

logger = structlog.get_logger()

router = APIRouter(prefix="/api/usage", tags=["usage"])


def get_accountant() -> RateAccountant:
    redis = get_redis()
    if redis is None:
        raise StoreUnavailable("Redis not available")
    return RateAccountant(redis)


@router.get("", response_model=UsageResponse)
async def get_usage(
    tenant: TenantPrincipal = Depends(require_tenant),
    accountant: RateAccountant = Depends(get_accountant),
):
    """Current rate window and billing-period usage against the tenant's plan."""
    limits = get_plan_table().get_limit(tenant.plan)
    try:
        return await accountant.usage(str(tenant.id), limits)
    except (aioredis.RedisError, OSError) as exc:
        logger.error("usage_read_failed", tenant_id=str(tenant.id), error=str(exc))
        raise StoreUnavailable("Redis error") from exc
