"""Custom-domain binding: requests on a tenant's hostname must carry that tenant's credentials."""

from __future__ import annotations

from typing import Callable

import structlog
from starlette.requests import Request
from starlette.responses import Response

from gateway.domains.service import DomainTrustService
from gateway.middleware.pipeline import Middleware, RequestContext, error_response
from gateway.store.postgres import StoreUnavailable

logger = structlog.get_logger()

_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "testserver", ""})


class DomainBinding(Middleware):
    """Look up the Host header among active custom domains.

    Platform hostnames pass through. On a custom hostname, a request whose
    credentials belong to another tenant, or to no tenant at all (inline or
    fallback credentials), is rejected.
    """

    def __init__(self, service_factory: Callable[[], DomainTrustService | None], platform_base_domains: list[str]) -> None:
        self._service_factory = service_factory
        self._base_domains = tuple(d.lower() for d in platform_base_domains)

    def _is_platform_host(self, host: str) -> bool:
        if host in _LOCAL_HOSTS:
            return True
        return any(host == base or host.endswith("." + base) for base in self._base_domains)

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        host = request.headers.get("host", "").split(":")[0].lower()
        if self._is_platform_host(host):
            return None

        service = self._service_factory()
        if service is None:
            return None
        try:
            domain = await service.get_active_by_hostname(host)
        except StoreUnavailable:
            logger.error("domain_binding_store_unavailable", host=host)
            return error_response(503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable")

        if domain is None:
            logger.warning("unknown_domain", host=host)
            return error_response(404, "DOMAIN_NOT_FOUND", "Unknown host")

        domain_tenant = str(domain["tenant_id"])
        context.extra["custom_domain_id"] = str(domain["id"])
        if not context.tenant_id:
            logger.warning("domain_tenantless_request", host=host, domain_id=str(domain["id"]))
            return error_response(403, "DOMAIN_TENANT_MISMATCH", "Credentials are not valid for this domain")
        if context.tenant_id != domain_tenant:
            logger.warning("domain_tenant_mismatch", host=host, domain_id=str(domain["id"]))
            return error_response(403, "DOMAIN_TENANT_MISMATCH", "Credentials are not valid for this domain")
        return None
