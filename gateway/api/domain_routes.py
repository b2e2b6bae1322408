"""Custom domain endpoints: register, verify, inspect, delete, suspend (admin)."""

from __future__ import annotations

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException

from gateway.api.auth import TenantPrincipal, require_admin_key, require_tenant
from gateway.domains.service import DomainTrustService
from gateway.models.domain import DomainCreate, DomainResponse, VerifyResponse

logger = structlog.get_logger()

router = APIRouter(prefix="/api/domains", tags=["domains"])
admin_router = APIRouter(
    prefix="/api/admin/domains",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)

# Injected during app lifespan startup
_service: DomainTrustService | None = None


def set_domain_service(service: DomainTrustService | None) -> None:
    global _service
    _service = service


def get_domain_service() -> DomainTrustService:
    if _service is None:
        raise HTTPException(status_code=503, detail="Domain service not initialized")
    return _service


@router.get("", response_model=list[DomainResponse])
async def list_domains(
    tenant: TenantPrincipal = Depends(require_tenant),
    service: DomainTrustService = Depends(get_domain_service),
):
    return [DomainResponse.from_row(d) for d in await service.list(tenant.id)]


@router.post("", status_code=201, response_model=DomainResponse)
async def create_domain(
    body: DomainCreate,
    tenant: TenantPrincipal = Depends(require_tenant),
    service: DomainTrustService = Depends(get_domain_service),
):
    """Register a hostname. The response carries the TXT record to publish."""
    domain = await service.create(tenant.id, body.hostname, tenant.plan)
    return DomainResponse.from_row(domain)


@router.get("/{domain_id}", response_model=DomainResponse)
async def get_domain(
    domain_id: UUID,
    refresh: bool = False,
    tenant: TenantPrincipal = Depends(require_tenant),
    service: DomainTrustService = Depends(get_domain_service),
):
    if refresh:
        domain = await service.refresh(tenant.id, domain_id)
    else:
        domain = await service.get(tenant.id, domain_id)
    return DomainResponse.from_row(domain)


@router.post("/{domain_id}/verify", response_model=VerifyResponse)
async def verify_domain(
    domain_id: UUID,
    tenant: TenantPrincipal = Depends(require_tenant),
    service: DomainTrustService = Depends(get_domain_service),
):
    result = await service.verify(tenant.id, domain_id)
    return VerifyResponse(
        verified=result.verified,
        status=result.status,
        message=result.message,
        code=result.code,
        next_steps=result.next_steps,
        domain=DomainResponse.from_row(result.domain),
    )


@router.delete("/{domain_id}", status_code=204)
async def delete_domain(
    domain_id: UUID,
    tenant: TenantPrincipal = Depends(require_tenant),
    service: DomainTrustService = Depends(get_domain_service),
):
    await service.delete(tenant.id, domain_id)


@admin_router.post("/{domain_id}/suspend", response_model=DomainResponse)
async def suspend_domain(
    domain_id: UUID,
    service: DomainTrustService = Depends(get_domain_service),
):
    domain = await service.suspend(domain_id, reason="admin")
    return DomainResponse.from_row(domain)
