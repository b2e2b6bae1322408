"""Credential resolution middleware: establishes the tenant for a proxied request."""

from __future__ import annotations

import structlog
from starlette.requests import Request
from starlette.responses import Response

from gateway.config.loader import get_settings
from gateway.errors import GatewayError
from gateway.middleware.pipeline import Middleware, RequestContext, error_response
from gateway.security.credentials import ResolverDeps, resolve_credential
from gateway.store.postgres import StoreUnavailable

logger = structlog.get_logger()


class CredentialResolution(Middleware):
    """Resolve upstream credentials from the request headers.

    Rejections use the resolver's error codes; none of them reveal which
    stage failed.
    """

    def __init__(self, deps: ResolverDeps | None = None) -> None:
        self._deps = deps

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        settings = get_settings()
        deps = self._deps or ResolverDeps.from_settings(settings)
        try:
            credential = await resolve_credential(request.headers, settings, deps)
        except GatewayError as exc:
            logger.info("credential_resolution_failed", code=exc.code)
            return error_response(exc.status_code, exc.code, exc.message)
        except StoreUnavailable:
            logger.error("credential_resolution_store_unavailable")
            return error_response(503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable")

        context.credential = credential
        context.tenant_id = credential.tenant_id or ""
        structlog.contextvars.bind_contextvars(
            tenant_id=context.tenant_id,
            credential_source=credential.source,
        )
        logger.debug("credential_resolved", source=credential.source)
        return None
