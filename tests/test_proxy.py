"""End-to-end tests for the proxied surface and its upstream forwarding."""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

import gateway.main as main_module
from gateway.main import app
from gateway.middleware.context_injector import ContextInjector
from gateway.middleware.credential_resolver import CredentialResolution
from gateway.middleware.domain_binding import DomainBinding
from gateway.middleware.pipeline import MiddlewarePipeline, RequestContext
from gateway.middleware.rate_limiter import RateLimiter
from gateway.security import cipher
from gateway.security.api_keys import generate_api_key
from gateway.security.credentials import ResolvedCredential, ResolverDeps
from gateway.store.postgres import StoreUnavailable
from gateway.upstream import build_upstream_url, forward, forwardable_headers
from tests.conftest import TEST_MASTER_KEY, TEST_TOKEN_SECRET

INLINE = {
    "x-upstream-url": "https://blog.acme.com",
    "x-upstream-username": "wp-admin",
    "x-upstream-password": "app-pass",
}


def _credential(tenant_id="t-1", base_url="https://blog.acme.com"):
    return ResolvedCredential(
        tenant_id=tenant_id,
        upstream_base_url=base_url,
        upstream_identity="wp-admin",
        upstream_secret="app-pass",
        source="api_key",
    )


class Upstream:
    """httpx mock transport that records what the gateway sent."""

    def __init__(self, response=None, error=None):
        self.requests: list[httpx.Request] = []
        self._response = response or httpx.Response(
            200,
            json={"ok": True},
            headers={"x-upstream": "yes", "connection": "close", "keep-alive": "timeout=5"},
        )
        self._error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._error is not None:
            raise self._error
        return self._response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), follow_redirects=False)


def _basic(identity, secret):
    return "Basic " + base64.b64encode(f"{identity}:{secret}".encode()).decode()


class TestUpstreamUrl:
    def test_join(self):
        assert build_upstream_url("https://a.com/", "/wp-json/wp/v2/posts") == "https://a.com/wp-json/wp/v2/posts"

    def test_query(self):
        assert build_upstream_url("https://a.com", "posts", "page=2") == "https://a.com/posts?page=2"

    def test_path_cannot_change_host(self):
        url = build_upstream_url("https://a.com/base", "//evil.com/x")
        assert httpx.URL(url).host == "a.com"

    def test_forwardable_headers(self):
        headers = forwardable_headers(
            [("Host", "gw"), ("Content-Length", "3"), ("Connection", "keep-alive"),
             ("Transfer-Encoding", "chunked"), ("Authorization", "Bearer x"), ("Accept", "*/*")],
            {"authorization"},
        )
        assert headers == {"Accept": "*/*"}


class TestForward:
    @pytest.mark.asyncio
    async def test_basic_auth_and_request_id(self):
        upstream = Upstream()
        async with upstream.client() as client:
            resp = await forward(
                client, _credential(), method="POST", path="wp-json/wp/v2/posts", query="a=1",
                headers={"content-type": "application/json"}, body=b'{"t":1}',
                max_body_bytes=1024, request_id="abc12345",
            )
        sent = upstream.requests[0]
        assert str(sent.url) == "https://blog.acme.com/wp-json/wp/v2/posts?a=1"
        assert sent.headers["authorization"] == _basic("wp-admin", "app-pass")
        assert sent.headers["x-request-id"] == "abc12345"
        assert sent.content == b'{"t":1}'
        assert resp.status_code == 200
        assert resp.headers["x-upstream"] == "yes"
        assert "keep-alive" not in resp.headers

    @pytest.mark.asyncio
    async def test_upstream_status_passes_through(self):
        upstream = Upstream(response=httpx.Response(404, json={"code": "rest_no_route"}))
        async with upstream.client() as client:
            resp = await forward(client, _credential(), method="GET", path="x", query="", headers={},
                                 body=b"", max_body_bytes=1024, request_id="r")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,status,code", [
        (httpx.ReadTimeout("slow"), 504, b"UPSTREAM_TIMEOUT"),
        (httpx.ConnectError("refused"), 502, b"UPSTREAM_UNREACHABLE"),
        (httpx.RemoteProtocolError("bad"), 502, b"UPSTREAM_ERROR"),
    ])
    async def test_transport_errors(self, error, status, code):
        async with Upstream(error=error).client() as client:
            resp = await forward(client, _credential(), method="GET", path="x", query="", headers={},
                                 body=b"", max_body_bytes=1024, request_id="r")
        assert resp.status_code == status
        assert code in resp.body

    @pytest.mark.asyncio
    async def test_oversize_response(self):
        upstream = Upstream(response=httpx.Response(200, content=b"x" * 2048))
        async with upstream.client() as client:
            resp = await forward(client, _credential(), method="GET", path="x", query="", headers={},
                                 body=b"", max_body_bytes=1024, request_id="r")
        assert resp.status_code == 502
        assert b"UPSTREAM_RESPONSE_TOO_LARGE" in resp.body


def _deps(**overrides):
    deps = ResolverDeps(
        master_key=TEST_MASTER_KEY,
        token_secret=TEST_TOKEN_SECRET,
        find_api_key=AsyncMock(return_value=None),
        touch_last_used=AsyncMock(),
        get_tenant=AsyncMock(return_value=None),
        get_connection=AsyncMock(return_value=None),
        list_active_connections=AsyncMock(return_value=[]),
        cache_get=AsyncMock(return_value=None),
        cache_set=AsyncMock(),
    )
    for key, value in overrides.items():
        setattr(deps, key, value)
    return deps


@pytest.fixture
def gateway(monkeypatch):
    """Wire the proxy globals to a mock upstream; yields (client, upstream, pipeline)."""
    upstream = Upstream()
    pipeline = MiddlewarePipeline()
    pipeline.add(ContextInjector())
    pipeline.add(CredentialResolution(_deps()))
    monkeypatch.setattr(main_module, "_http_client", upstream.client())
    monkeypatch.setattr(main_module, "_pipeline", pipeline)
    yield TestClient(app), upstream, pipeline


class TestProxyEndpoint:
    def test_inline_credentials_forwarded(self, gateway):
        client, upstream, _ = gateway
        resp = client.get("/remote/wp-json/wp/v2/posts?per_page=5", headers={**INLINE, "X-Request-ID": "mine"})

        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert resp.headers["x-original-request-id"] == "mine"
        sent = upstream.requests[0]
        assert str(sent.url) == "https://blog.acme.com/wp-json/wp/v2/posts?per_page=5"
        assert sent.headers["authorization"] == _basic("wp-admin", "app-pass")
        assert sent.headers["x-request-id"] == resp.headers["x-request-id"]
        assert sent.headers["x-forwarded-for"] == "testclient"
        for name in INLINE:
            assert name not in sent.headers

    def test_no_credentials(self, gateway):
        client, upstream, _ = gateway
        resp = client.get("/remote/wp-json")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "NO_CREDENTIALS"
        assert "x-request-id" in resp.headers
        assert upstream.requests == []

    def test_unknown_api_key(self, gateway):
        client, upstream, _ = gateway
        resp = client.get("/remote/wp-json", headers={"Authorization": "Bearer gw_live_" + "a" * 43})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert upstream.requests == []

    def test_body_too_large(self, gateway, monkeypatch):
        monkeypatch.setenv("GATEWAY_MAX_BODY_BYTES", "16")
        client, upstream, _ = gateway
        resp = client.post("/remote/wp-json", headers=INLINE, content=b"x" * 64)
        assert resp.status_code == 413
        assert upstream.requests == []

    def test_rate_limiter_fails_closed_without_redis(self, gateway, monkeypatch):
        client, upstream, pipeline = gateway
        pipeline.add(RateLimiter())
        monkeypatch.setattr("gateway.middleware.rate_limiter.get_redis", lambda: None)
        resp = client.get("/remote/wp-json", headers=INLINE)
        assert resp.status_code == 503
        assert upstream.requests == []


def _request(host: str):
    request = MagicMock()
    request.headers = {"host": host}
    return request


def _binding(service):
    return DomainBinding(lambda: service, ["wordpress-mcp.com"])


class TestDomainBinding:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("host", ["localhost:8080", "wordpress-mcp.com", "acme.wordpress-mcp.com", "testserver"])
    async def test_platform_hosts_pass(self, host):
        service = MagicMock()
        service.get_active_by_hostname = AsyncMock()
        assert await _binding(service).process_request(_request(host), RequestContext()) is None
        service.get_active_by_hostname.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_host(self):
        service = MagicMock()
        service.get_active_by_hostname = AsyncMock(return_value=None)
        resp = await _binding(service).process_request(_request("api.acme.com"), RequestContext())
        assert resp.status_code == 404
        assert b"DOMAIN_NOT_FOUND" in resp.body

    @pytest.mark.asyncio
    async def test_matching_tenant(self):
        tenant_id, domain_id = uuid4(), uuid4()
        service = MagicMock()
        service.get_active_by_hostname = AsyncMock(return_value={"id": domain_id, "tenant_id": tenant_id})
        context = RequestContext(tenant_id=str(tenant_id))
        assert await _binding(service).process_request(_request("API.acme.com:443"), context) is None
        service.get_active_by_hostname.assert_awaited_once_with("api.acme.com")
        assert context.extra["custom_domain_id"] == str(domain_id)

    @pytest.mark.asyncio
    async def test_other_tenant_rejected(self):
        service = MagicMock()
        service.get_active_by_hostname = AsyncMock(return_value={"id": uuid4(), "tenant_id": uuid4()})
        resp = await _binding(service).process_request(_request("api.acme.com"), RequestContext(tenant_id="other"))
        assert resp.status_code == 403
        assert b"DOMAIN_TENANT_MISMATCH" in resp.body

    @pytest.mark.asyncio
    async def test_tenantless_credentials_rejected_on_custom_domain(self):
        service = MagicMock()
        service.get_active_by_hostname = AsyncMock(return_value={"id": uuid4(), "tenant_id": uuid4()})
        resp = await _binding(service).process_request(_request("api.acme.com"), RequestContext())
        assert resp.status_code == 403
        assert b"DOMAIN_TENANT_MISMATCH" in resp.body

    @pytest.mark.asyncio
    async def test_store_unavailable(self):
        service = MagicMock()
        service.get_active_by_hostname = AsyncMock(side_effect=StoreUnavailable("down"))
        resp = await _binding(service).process_request(_request("api.acme.com"), RequestContext())
        assert resp.status_code == 503


class TestCredentialResolutionMiddleware:
    @pytest.mark.asyncio
    async def test_sets_tenant_context(self):
        record = {
            "api_key_id": uuid4(), "tenant_id": uuid4(), "connection_id": uuid4(),
            "base_url": "https://blog.acme.com", "tenant_status": "active", "connection_status": "active",
            "plan": "pro",
        }
        record["identity_envelope"] = cipher.encrypt("wp-admin", TEST_MASTER_KEY)
        record["secret_envelope"] = cipher.encrypt("app-pass", TEST_MASTER_KEY)
        key = generate_api_key()
        request = MagicMock()
        request.headers = {"authorization": f"Bearer {key.plaintext}"}
        context = RequestContext()

        result = await CredentialResolution(_deps(cache_get=AsyncMock(return_value=record))).process_request(
            request, context,
        )

        assert result is None
        assert context.tenant_id == str(record["tenant_id"])
        assert context.credential.plan == "pro"
        assert context.credential.upstream_secret == "app-pass"

    @pytest.mark.asyncio
    async def test_store_unavailable_is_503(self):
        request = MagicMock()
        request.headers = {"x-api-key": generate_api_key().plaintext}
        deps = _deps(find_api_key=AsyncMock(side_effect=StoreUnavailable("down")))
        resp = await CredentialResolution(deps).process_request(request, RequestContext())
        assert resp.status_code == 503
