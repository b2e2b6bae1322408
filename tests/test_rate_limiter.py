"""Tests for fixed-window rate accounting and the rate limiter middleware."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from starlette.requests import Request
from starlette.responses import Response

from gateway.config.plans import UNLIMITED, PlanLimits, get_plan_table
from gateway.middleware.pipeline import RequestContext
from gateway.middleware.rate_limiter import (
    RateAccountant,
    RateLimiter,
    seconds_until_next_month,
    usage_key,
    window_key,
)
from gateway.security.credentials import ResolvedCredential
from tests.helpers.fakes import T0, FakeClock, FakeRedis


def _make_request(path: str = "/remote/wp/v2/posts") -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"",
        "headers": [],
        "root_path": "",
        "server": ("localhost", 8080),
        "client": ("127.0.0.1", 12345),
    }
    return Request(scope)


def _tenant_context(tenant_id: str = "tenant-1", plan: str = "free") -> RequestContext:
    credential = ResolvedCredential(
        tenant_id=tenant_id,
        upstream_base_url="https://site.example",
        upstream_identity="admin",
        upstream_secret="secret",
        source="api_key",
        plan=plan,
    )
    return RequestContext(tenant_id=tenant_id, credential=credential)


class TestKeys:
    def test_window_key_buckets(self):
        assert window_key("ratelimit", "t1", 60, T0) == f"ratelimit:t1:{int(T0 // 60)}"
        assert window_key("ratelimit", "t1", 60, T0 + 59) == window_key("ratelimit", "t1", 60, T0)
        assert window_key("ratelimit", "t1", 60, T0 + 60) != window_key("ratelimit", "t1", 60, T0)

    def test_usage_key_is_monthly(self):
        assert usage_key("t1", T0) == "usage:t1:2024-03"

    def test_seconds_until_next_month(self):
        # 2024-03-31 23:59:00 UTC
        assert seconds_until_next_month(1711929540.0) == 60
        # December rolls into January
        assert seconds_until_next_month(1735689540.0) == 60


class TestRateAccountant:
    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_blocks(self):
        clock = FakeClock()
        accountant = RateAccountant(FakeRedis(clock), clock=clock)
        key = accountant.window_key("t1", 60)

        decisions = [await accountant.try_consume(key, 3, 60) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert decisions[0].remaining == 2
        assert decisions[3].remaining == 0
        assert decisions[3].count == 4

    @pytest.mark.asyncio
    async def test_new_window_resets(self):
        clock = FakeClock()
        accountant = RateAccountant(FakeRedis(clock), clock=clock)
        for _ in range(3):
            await accountant.try_consume(accountant.window_key("t1", 60), 2, 60)
        clock.advance(60)
        decision = await accountant.try_consume(accountant.window_key("t1", 60), 2, 60)
        assert decision.allowed
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_tenants_are_independent(self):
        clock = FakeClock()
        accountant = RateAccountant(FakeRedis(clock), clock=clock)
        for _ in range(5):
            await accountant.try_consume(accountant.window_key("t1", 60), 2, 60)
        decision = await accountant.try_consume(accountant.window_key("t2", 60), 2, 60)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_reset_after_counts_down(self):
        clock = FakeClock(T0 + 45)
        accountant = RateAccountant(FakeRedis(clock), clock=clock)
        decision = await accountant.try_consume(accountant.window_key("t1", 60), 10, 60)
        assert decision.reset_after == 15

    @pytest.mark.asyncio
    async def test_peek_and_reset(self):
        clock = FakeClock()
        accountant = RateAccountant(FakeRedis(clock), clock=clock)
        key = accountant.window_key("t1", 60)
        assert await accountant.peek(key) == 0
        await accountant.try_consume(key, 10, 60)
        await accountant.try_consume(key, 10, 60)
        assert await accountant.peek(key) == 2
        await accountant.reset(key)
        assert await accountant.peek(key) == 0

    @pytest.mark.asyncio
    async def test_usage_reads_without_consuming(self):
        clock = FakeClock(T0 + 15)
        redis = FakeRedis(clock)
        accountant = RateAccountant(redis, clock=clock)
        for _ in range(3):
            await accountant.try_consume(accountant.window_key("t1", 60), 20, 60)
        for _ in range(25):
            await accountant.try_consume(accountant.usage_key("t1"), 100, 3600)
        calls = redis.eval_calls

        usage = await accountant.usage("t1", get_plan_table().get_limit("free"))

        assert redis.eval_calls == calls
        assert usage["plan"] == "free"
        assert usage["window"] == {
            "used": 3, "limit": 20, "remaining": 17, "window_seconds": 60, "reset_after": 45,
        }
        assert usage["current_period"] == {
            "period": "2024-03", "used": 25, "limit": 100, "remaining": 75, "percent_used": 25,
        }

    @pytest.mark.asyncio
    async def test_usage_unlimited_period(self):
        clock = FakeClock()
        accountant = RateAccountant(FakeRedis(clock), clock=clock)
        limits = PlanLimits(
            plan="custom", requests_per_window=50, window_seconds=60, monthly_requests=UNLIMITED,
            max_connections=1, max_domains=0, audit_retention_days=7,
        )
        period = (await accountant.usage("t1", limits))["current_period"]
        assert period == {"period": "2024-03", "used": 0, "limit": None, "remaining": None, "percent_used": None}

    @pytest.mark.asyncio
    async def test_reset_usage_clears_window_and_period(self):
        clock = FakeClock()
        accountant = RateAccountant(FakeRedis(clock), clock=clock)
        await accountant.try_consume(accountant.window_key("t1", 60), 20, 60)
        await accountant.try_consume(accountant.usage_key("t1"), 100, 3600)
        await accountant.try_consume(accountant.usage_key("t2"), 100, 3600)

        await accountant.reset_usage("t1", 60)

        assert await accountant.peek(accountant.window_key("t1", 60)) == 0
        assert await accountant.peek(accountant.usage_key("t1")) == 0
        assert await accountant.peek(accountant.usage_key("t2")) == 1


class TestRateLimiterMiddleware:
    @pytest.mark.asyncio
    async def test_under_limit_passes(self, fake_recorder):
        clock = FakeClock()
        redis = FakeRedis(clock)
        ctx = _tenant_context(plan="starter")

        with patch("gateway.middleware.rate_limiter.get_redis", return_value=redis):
            result = await RateLimiter(clock=clock).process_request(_make_request(), ctx)

        assert result is None
        assert ctx.extra["rate_limit_max"] == 60
        assert ctx.extra["rate_limit_remaining"] == 59

    @pytest.mark.asyncio
    async def test_window_exceeded_returns_429(self, fake_recorder):
        clock = FakeClock()
        redis = FakeRedis(clock)
        limiter = RateLimiter(clock=clock)

        with patch("gateway.middleware.rate_limiter.get_redis", return_value=redis):
            for _ in range(20):
                assert await limiter.process_request(_make_request(), _tenant_context()) is None
            result = await limiter.process_request(_make_request(), _tenant_context())

        assert result.status_code == 429
        assert result.headers["Retry-After"] == "60"
        assert result.headers["X-RateLimit-Remaining"] == "0"
        assert fake_recorder.actions() == ["rate_limit.exceeded"]
        assert json.loads(result.body) == {"error": {"code": "RATE_LIMITED", "message": "Rate limit exceeded"}}

    @pytest.mark.asyncio
    async def test_window_recovers_after_reset(self, fake_recorder):
        clock = FakeClock()
        redis = FakeRedis(clock)
        limiter = RateLimiter(clock=clock)

        with patch("gateway.middleware.rate_limiter.get_redis", return_value=redis):
            for _ in range(21):
                await limiter.process_request(_make_request(), _tenant_context())
            clock.advance(60)
            result = await limiter.process_request(_make_request(), _tenant_context())

        assert result is None

    @pytest.mark.asyncio
    async def test_monthly_quota_exceeded(self, fake_recorder):
        clock = FakeClock()
        redis = FakeRedis(clock)
        limiter = RateLimiter(clock=clock)

        # free plan: 20 per minute, 100 per month
        with patch("gateway.middleware.rate_limiter.get_redis", return_value=redis):
            for _ in range(5):
                for _ in range(20):
                    assert await limiter.process_request(_make_request(), _tenant_context()) is None
                clock.advance(60)
            result = await limiter.process_request(_make_request(), _tenant_context())

        assert result.status_code == 429
        assert int(result.headers["Retry-After"]) > 60
        assert json.loads(result.body)["error"]["message"] == "Monthly request quota exceeded"
        assert fake_recorder.entries[-1]["details"] == {"limit_type": "monthly"}

    @pytest.mark.asyncio
    async def test_tenantless_request_uses_default_limit(self, fake_recorder):
        clock = FakeClock()
        redis = FakeRedis(clock)
        credential = ResolvedCredential(
            tenant_id=None,
            upstream_base_url="https://inline.example",
            upstream_identity="u",
            upstream_secret="p",
            source="inline",
        )
        ctx = RequestContext(credential=credential)

        with patch("gateway.middleware.rate_limiter.get_redis", return_value=redis):
            result = await RateLimiter(clock=clock).process_request(_make_request(), ctx)

        assert result is None
        assert ctx.extra["rate_limit_max"] == 60
        assert fake_recorder.entries == []

    @pytest.mark.asyncio
    async def test_fail_closed_without_redis(self):
        with patch("gateway.middleware.rate_limiter.get_redis", return_value=None):
            result = await RateLimiter().process_request(_make_request(), _tenant_context())
        assert result.status_code == 503

    @pytest.mark.asyncio
    async def test_fail_closed_on_redis_error(self):
        redis = MagicMock()

        async def _boom(*args):
            raise ConnectionError("redis down")

        redis.eval = _boom
        with patch("gateway.middleware.rate_limiter.get_redis", return_value=redis):
            result = await RateLimiter().process_request(_make_request(), _tenant_context())
        assert result.status_code == 503

    @pytest.mark.asyncio
    async def test_injects_headers_on_response(self):
        ctx = RequestContext()
        ctx.extra.update(rate_limit_max=60, rate_limit_remaining=42, rate_limit_reset=17)
        response = await RateLimiter().process_response(Response(content="ok"), ctx)
        assert response.headers["X-RateLimit-Limit"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "42"
        assert response.headers["X-RateLimit-Reset"] == "17"
