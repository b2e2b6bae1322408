"""Ordered middleware chain for the proxied surface."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

if TYPE_CHECKING:
    from gateway.security.credentials import ResolvedCredential

logger = structlog.get_logger()


@dataclass
class RequestContext:
    """Mutable context passed through the middleware pipeline."""

    request_id: str = ""
    tenant_id: str = ""
    credential: ResolvedCredential | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.request_id:
            self.request_id = uuid4().hex[:8]


class Middleware(abc.ABC):
    """Base class for middleware in the pipeline."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abc.abstractmethod
    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        """Return None to continue the pipeline, or a Response to short-circuit."""
        ...

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        return response


def error_response(status_code: int, code: str, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        {"error": {"code": code, "message": message}},
        status_code=status_code,
        headers=headers,
    )


class MiddlewarePipeline:
    """Request handlers run forward, response handlers in reverse."""

    def __init__(self) -> None:
        self._middleware: list[Middleware] = []

    def add(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)
        logger.info("middleware_registered", name=middleware.name)

    @property
    def names(self) -> list[str]:
        return [mw.name for mw in self._middleware]

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        """Run the request through every middleware in order.

        An exception inside one middleware becomes a 502 rather than crashing
        the server.
        """
        for mw in self._middleware:
            try:
                result = await mw.process_request(request, context)
            except Exception:
                logger.exception("middleware_request_error", middleware=mw.name)
                return error_response(502, "GATEWAY_ERROR", "Internal gateway error")
            if isinstance(result, Response):
                logger.info("middleware_short_circuit", middleware=mw.name, status=result.status_code)
                return result
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        for mw in reversed(self._middleware):
            try:
                response = await mw.process_response(response, context)
            except Exception:
                logger.exception("middleware_response_error", middleware=mw.name)
        return response
