"""Forwarding of proxied requests to the tenant's upstream API."""

from __future__ import annotations

from typing import Iterable, Mapping

import httpx
import structlog
from fastapi.responses import Response

from gateway.middleware.pipeline import error_response
from gateway.security.credentials import ResolvedCredential

logger = structlog.get_logger()

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


def build_upstream_url(base_url: str, path: str, query: str = "") -> str:
    """Join *path* under *base_url*. The path can never replace the host."""
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    if query:
        url = f"{url}?{query}"
    return url


def forwardable_headers(headers: Iterable[tuple[str, str]], stripped: set[str]) -> dict[str, str]:
    out = {}
    for key, value in headers:
        lower = key.lower()
        if lower in HOP_BY_HOP_HEADERS or lower in ("host", "content-length") or lower in stripped:
            continue
        out[key] = value
    return out


async def forward(
    client: httpx.AsyncClient,
    credential: ResolvedCredential,
    *,
    method: str,
    path: str,
    query: str,
    headers: Mapping[str, str],
    body: bytes,
    max_body_bytes: int,
    request_id: str,
) -> Response:
    """Perform *method* on *path* against the upstream as the resolved identity."""
    url = build_upstream_url(credential.upstream_base_url, path, query)
    auth = httpx.BasicAuth(credential.upstream_identity, credential.upstream_secret)
    try:
        upstream_resp = await client.request(
            method=method,
            url=url,
            headers={**headers, "x-request-id": request_id},
            content=body,
            auth=auth,
        )
    except httpx.TimeoutException:
        logger.error("upstream_timeout", url=url)
        return error_response(504, "UPSTREAM_TIMEOUT", "Upstream timeout")
    except httpx.ConnectError:
        logger.error("upstream_connect_error", url=url)
        return error_response(502, "UPSTREAM_UNREACHABLE", "Upstream unreachable")
    except httpx.HTTPError as exc:
        logger.error("upstream_error", url=url, error=str(exc))
        return error_response(502, "UPSTREAM_ERROR", "Upstream error")

    if len(upstream_resp.content) > max_body_bytes:
        logger.error("upstream_response_too_large", actual_size=len(upstream_resp.content), max=max_body_bytes)
        return error_response(502, "UPSTREAM_RESPONSE_TOO_LARGE", "Upstream response too large")

    response_headers = {
        key: value
        for key, value in upstream_resp.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in ("content-length", "content-encoding")
    }
    logger.info("upstream_response", status=upstream_resp.status_code, method=method)
    return Response(
        content=upstream_resp.content,
        status_code=upstream_resp.status_code,
        headers=response_headers,
    )
