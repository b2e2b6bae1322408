"""Context injector: request id, log context and header hygiene."""

from __future__ import annotations

from uuid import uuid4

import structlog
from starlette.requests import Request
from starlette.responses import Response

from gateway.middleware.pipeline import Middleware, RequestContext
from gateway.utils.sanitize import strip_control_chars

logger = structlog.get_logger()

# Headers clients must not be able to spoof
_SPOOFABLE_HEADERS = frozenset({
    "x-tenant-id",
    "x-request-id",
})

# Credential-bearing headers, consumed by the gateway and never forwarded upstream
CREDENTIAL_HEADERS = frozenset({
    "authorization",
    "x-api-key",
    "x-connection-id",
    "x-upstream-url",
    "x-upstream-username",
    "x-upstream-password",
    "x-wordpress-url",
    "x-wordpress-username",
    "x-wordpress-password",
})

_STRIP_PREFIXES = ("x-gateway-",)

_MAX_REQUEST_ID_LENGTH = 256


class ContextInjector(Middleware):
    """Assign a request id, bind log context, and mark headers not to forward.

    The client's own X-Request-ID is kept as X-Original-Request-ID.
    """

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        new_request_id = uuid4().hex[:8]

        client_request_id = request.headers.get("x-request-id")
        if client_request_id:
            context.extra["original_request_id"] = strip_control_chars(
                client_request_id[:_MAX_REQUEST_ID_LENGTH]
            )

        context.request_id = new_request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=new_request_id)

        stripped = set()
        for header_name in request.headers:
            lower = header_name.lower()
            if lower in _SPOOFABLE_HEADERS or lower in CREDENTIAL_HEADERS:
                stripped.add(lower)
            elif any(lower.startswith(prefix) for prefix in _STRIP_PREFIXES):
                stripped.add(lower)
        context.extra["stripped_headers"] = stripped

        client_ip = request.client.host if request.client else "unknown"
        context.extra["client_ip"] = client_ip
        existing_xff = request.headers.get("x-forwarded-for")
        if existing_xff:
            context.extra["x_forwarded_for"] = f"{existing_xff}, {client_ip}"
        else:
            context.extra["x_forwarded_for"] = client_ip
        context.extra["x_forwarded_proto"] = request.url.scheme

        logger.debug("context_injected", client_ip=client_ip)
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        response.headers["x-request-id"] = context.request_id
        if context.extra.get("original_request_id"):
            response.headers["x-original-request-id"] = context.extra["original_request_id"]
        return response
