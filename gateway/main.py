"""FastAPI application: management API plus the credential-resolving proxy."""

from __future__ import annotations

import asyncio
import signal
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from gateway.api.admin_routes import router as tenant_admin_router
from gateway.api.audit_routes import router as audit_router
from gateway.api.domain_routes import admin_router as domain_admin_router
from gateway.api.domain_routes import router as domain_router
from gateway.api.domain_routes import set_domain_service
from gateway.api.tenant_routes import auth_router
from gateway.api.tenant_routes import router as tenant_router
from gateway.api.usage_routes import router as usage_router
from gateway.audit.recorder import AuditRecorder, set_recorder
from gateway.config.loader import get_settings, load_settings, register_reload_handler
from gateway.domains.dns import DohTxtResolver
from gateway.domains.service import DomainTrustService, ImmediateSslProvisioner
from gateway.errors import GatewayError
from gateway.health import router as health_router
from gateway.jobs.audit_retention import run_retention_cleanup
from gateway.jobs.ssl_poller import run_ssl_poller
from gateway.logging_config import setup_logging
from gateway.middleware.context_injector import ContextInjector
from gateway.middleware.credential_resolver import CredentialResolution
from gateway.middleware.domain_binding import DomainBinding
from gateway.middleware.pipeline import MiddlewarePipeline, RequestContext, error_response
from gateway.middleware.rate_limiter import RateLimiter
from gateway.store import postgres as pg_store
from gateway.store import redis as redis_store
from gateway.store.postgres import StoreUnavailable
from gateway.upstream import forward, forwardable_headers

logger = structlog.get_logger()

_http_client: httpx.AsyncClient | None = None
_pipeline: MiddlewarePipeline | None = None
_domain_service: DomainTrustService | None = None
_shutdown_event = asyncio.Event()
_background_tasks: list[asyncio.Task] = []


def _current_domain_service() -> DomainTrustService | None:
    return _domain_service


def _build_pipeline(platform_base_domains: list[str]) -> MiddlewarePipeline:
    """Ordered middleware for the proxied surface."""
    pipeline = MiddlewarePipeline()
    pipeline.add(ContextInjector())                 # 0: request ID, header hygiene
    pipeline.add(CredentialResolution())            # 1: tenant + upstream credential
    pipeline.add(DomainBinding(_current_domain_service, platform_base_domains))  # 2
    pipeline.add(RateLimiter())                     # 3: window + monthly quota
    return pipeline


async def _cancel(task: asyncio.Task) -> None:
    if not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    global _http_client, _pipeline, _domain_service

    settings = load_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.log_json)
    register_reload_handler()

    # Stores are non-fatal at startup; /ready reports them
    await redis_store.init_redis(settings.redis_url, pool_size=settings.redis_pool_size)
    await pg_store.init_postgres(
        settings.postgres_url,
        min_size=settings.postgres_pool_min,
        max_size=settings.postgres_pool_max,
    )
    await pg_store.run_migrations()

    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.proxy_timeout),
        follow_redirects=False,
        limits=httpx.Limits(
            max_connections=settings.upstream_max_connections,
            max_keepalive_connections=settings.upstream_max_keepalive,
        ),
    )

    recorder = AuditRecorder()
    set_recorder(recorder)
    await recorder.start()

    _domain_service = DomainTrustService(
        resolver=DohTxtResolver(settings.dns_resolver_url, timeout=settings.dns_timeout_seconds),
        provisioner=ImmediateSslProvisioner(),
        product_name=settings.product_name,
        platform_base_domains=settings.platform_base_domains,
        ssl_mode=settings.ssl_mode,
        ssl_timeout_hours=settings.ssl_timeout_hours,
        audit=recorder,
    )
    set_domain_service(_domain_service)

    _pipeline = _build_pipeline(settings.platform_base_domains)

    _shutdown_event.clear()
    _background_tasks.append(asyncio.create_task(
        run_retention_cleanup(settings.audit_retention_cleanup_interval)
    ))
    if settings.ssl_mode == "async":
        _background_tasks.append(asyncio.create_task(
            run_ssl_poller(
                _domain_service,
                poll_interval=settings.ssl_poll_interval,
                shutdown_event=_shutdown_event,
            )
        ))

    try:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, lambda: _shutdown_event.set())
    except (RuntimeError, NotImplementedError):
        pass  # Not in main thread (e.g., during tests)

    logger.info("gateway_started", port=settings.listen_port, ssl_mode=settings.ssl_mode)

    yield

    logger.info("gateway_shutting_down")
    _shutdown_event.set()

    for task in _background_tasks:
        await _cancel(task)
    _background_tasks.clear()

    await recorder.stop()
    set_domain_service(None)
    _domain_service = None

    if _http_client:
        await _http_client.aclose()
        _http_client = None
    await redis_store.close_redis()
    await pg_store.close_postgres()

    logger.info("gateway_stopped")


app = FastAPI(title="Tenant Gateway", lifespan=lifespan)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    logger.error("store_unavailable", path=request.url.path)
    return JSONResponse(
        {"error": {"code": "SERVICE_UNAVAILABLE", "message": "Service temporarily unavailable"}},
        status_code=503,
    )


app.include_router(health_router)
app.include_router(auth_router)
app.include_router(tenant_router)
app.include_router(domain_router)
app.include_router(domain_admin_router)
app.include_router(tenant_admin_router)
app.include_router(audit_router)
app.include_router(usage_router)


@app.api_route("/remote/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def proxy_request(request: Request, path: str) -> Response:
    """Forward to the upstream resolved from the request's credentials."""
    if _http_client is None or _pipeline is None:
        return error_response(503, "SERVICE_UNAVAILABLE", "Gateway not initialized")

    settings = get_settings()
    context = RequestContext()

    short_circuit = await _pipeline.process_request(request, context)
    if short_circuit is not None:
        return await _pipeline.process_response(short_circuit, context)

    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > settings.max_body_bytes:
                return error_response(413, "BODY_TOO_LARGE", "Request body too large")
        except (ValueError, OverflowError):
            return error_response(400, "INVALID_CONTENT_LENGTH", "Invalid Content-Length")
    body = await request.body()
    if len(body) > settings.max_body_bytes:
        return error_response(413, "BODY_TOO_LARGE", "Request body too large")

    headers = forwardable_headers(request.headers.items(), context.extra.get("stripped_headers", set()))
    headers["x-forwarded-for"] = context.extra.get("x_forwarded_for", "")
    headers["x-forwarded-proto"] = context.extra.get("x_forwarded_proto", "")

    response = await forward(
        _http_client,
        context.credential,
        method=request.method,
        path=path,
        query=request.url.query,
        headers=headers,
        body=body,
        max_body_bytes=settings.max_body_bytes,
        request_id=context.request_id,
    )
    return await _pipeline.process_response(response, context)
