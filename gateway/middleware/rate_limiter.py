"""Redis fixed-window rate accounting and the rate limiter middleware."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from starlette.requests import Request
from starlette.responses import Response

from gateway.audit.recorder import get_recorder
from gateway.config import audit_actions
from gateway.config.loader import get_settings
from gateway.config.plans import UNLIMITED, PlanLimits, get_plan_table
from gateway.errors import RateLimited
from gateway.middleware.pipeline import Middleware, RequestContext, error_response
from gateway.store.redis import get_redis

logger = structlog.get_logger()

_KEY_PREFIX = "ratelimit"
_USAGE_PREFIX = "usage"
_USAGE_TTL_SECONDS = 32 * 24 * 60 * 60

# Atomic increment: the first hit in a window sets its expiry.
# No read-modify-write from the client side.
_CONSUME_LUA = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_after: int


def window_key(scope: str, tenant_id: str, window_seconds: int, now: float) -> str:
    """Key for the fixed window containing *now*: ``<scope>:<tenant>:<bucket>``."""
    bucket = int(now // window_seconds)
    return f"{scope}:{tenant_id}:{bucket}"


def billing_period(now: float) -> str:
    return datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m")


def usage_key(tenant_id: str, now: float) -> str:
    """Monthly usage counter key: ``usage:<tenant>:<YYYY-MM>`` (UTC)."""
    return f"{_USAGE_PREFIX}:{tenant_id}:{billing_period(now)}"


def seconds_until_next_month(now: float) -> int:
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    if current.month == 12:
        start = current.replace(year=current.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    else:
        start = current.replace(month=current.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return max(1, int(start.timestamp() - now))


class RateAccountant:
    """Fixed-window counters on Redis.

    Errors from Redis propagate; callers decide whether to fail closed.
    """

    def __init__(self, redis: Any, clock: Callable[[], float] = time.time) -> None:
        self._redis = redis
        self._clock = clock

    def window_key(self, tenant_id: str, window_seconds: int, scope: str = _KEY_PREFIX) -> str:
        return window_key(scope, tenant_id, window_seconds, self._clock())

    def usage_key(self, tenant_id: str) -> str:
        return usage_key(tenant_id, self._clock())

    def reset_after(self, window_seconds: int) -> int:
        """Seconds until the current fixed window rolls over."""
        return max(1, window_seconds - int(self._clock()) % window_seconds)

    async def try_consume(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        """Count one request against *key*. Allowed iff the new count <= limit."""
        count = int(await self._redis.eval(_CONSUME_LUA, 1, key, str(int(window_seconds))))
        return RateDecision(
            allowed=count <= limit,
            count=count,
            limit=limit,
            remaining=max(0, limit - count),
            reset_after=self.reset_after(window_seconds),
        )

    async def peek(self, key: str) -> int:
        """Current count without incrementing."""
        value = await self._redis.get(key)
        return int(value) if value is not None else 0

    async def reset(self, key: str) -> None:
        await self._redis.delete(key)

    async def usage(self, tenant_id: str, limits: PlanLimits) -> dict[str, Any]:
        """Current window and billing-period counts, read without consuming."""
        window = limits.window_seconds
        window_used = await self.peek(self.window_key(tenant_id, window))
        period_used = await self.peek(self.usage_key(tenant_id))

        monthly = limits.monthly_requests
        unlimited = monthly == UNLIMITED
        return {
            "plan": limits.plan,
            "window": {
                "used": window_used,
                "limit": limits.requests_per_window,
                "remaining": max(0, limits.requests_per_window - window_used),
                "window_seconds": window,
                "reset_after": self.reset_after(window),
            },
            "current_period": {
                "period": billing_period(self._clock()),
                "used": period_used,
                "limit": None if unlimited else monthly,
                "remaining": None if unlimited else max(0, monthly - period_used),
                "percent_used": None if unlimited or monthly <= 0 else min(100, round(100 * period_used / monthly)),
            },
        }

    async def reset_usage(self, tenant_id: str, window_seconds: int) -> None:
        """Clear a tenant's current window and billing-period counters."""
        await self.reset(self.window_key(tenant_id, window_seconds))
        await self.reset(self.usage_key(tenant_id))


def _subject(context: RequestContext) -> str:
    """Counter subject: the tenant, or a hash of the upstream for tenantless sources."""
    if context.tenant_id:
        return context.tenant_id
    credential = context.credential
    base = credential.upstream_base_url if credential else context.extra.get("client_ip", "unknown")
    source = credential.source if credential else "anonymous"
    return f"{source}-{hashlib.sha256(base.encode()).hexdigest()[:16]}"


def _unavailable() -> Response:
    return error_response(503, "SERVICE_UNAVAILABLE", "Service temporarily unavailable")


class RateLimiter(Middleware):
    """Per-tenant fixed-window limit plus monthly usage metering.

    - Limits come from the tenant's plan; tenantless requests use settings
    - Fail-closed when Redis is unavailable or erroring (503)
    - Injects X-RateLimit-* response headers
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        redis = get_redis()
        if redis is None:
            logger.error("rate_limiter_no_redis", action="fail_closed")
            return _unavailable()

        settings = get_settings()
        accountant = RateAccountant(redis, clock=self._clock)
        subject = _subject(context)

        if context.tenant_id:
            plan = context.credential.plan if context.credential else None
            limits = get_plan_table().get_limit(plan)
            max_requests, window = limits.requests_per_window, limits.window_seconds
            monthly = limits.monthly_requests
        else:
            max_requests, window = settings.rate_limit_default_max, settings.rate_limit_window_seconds
            monthly = UNLIMITED

        try:
            decision = await accountant.try_consume(
                accountant.window_key(subject, window), max_requests, window,
            )
            usage = None
            if decision.allowed and monthly != UNLIMITED:
                usage = await accountant.try_consume(
                    usage_key(subject, self._clock()), monthly, _USAGE_TTL_SECONDS,
                )
        except Exception as exc:
            logger.error("rate_limiter_redis_error", error=str(exc), action="fail_closed")
            return _unavailable()

        context.extra["rate_limit_max"] = decision.limit
        context.extra["rate_limit_remaining"] = decision.remaining
        context.extra["rate_limit_reset"] = decision.reset_after

        if decision.allowed and (usage is None or usage.allowed):
            return None

        monthly_exceeded = decision.allowed
        retry_after = seconds_until_next_month(self._clock()) if monthly_exceeded else decision.reset_after
        logger.warning(
            "rate_limit_exceeded",
            subject=subject,
            limit_type="monthly" if monthly_exceeded else "window",
            current=usage.count if monthly_exceeded else decision.count,
            max=monthly if monthly_exceeded else max_requests,
        )
        if context.tenant_id:
            get_recorder().record_system_action(
                context.tenant_id,
                audit_actions.RATE_LIMIT_EXCEEDED,
                details={"limit_type": "monthly" if monthly_exceeded else "window"},
                ip_address=context.extra.get("client_ip"),
            )

        limited = RateLimited("Monthly request quota exceeded" if monthly_exceeded else None, retry_after=retry_after)
        return error_response(
            limited.status_code,
            limited.code,
            limited.message,
            headers={
                "Retry-After": str(limited.retry_after),
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(decision.reset_after),
            },
        )

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        if "rate_limit_max" in context.extra:
            response.headers["X-RateLimit-Limit"] = str(context.extra["rate_limit_max"])
            response.headers["X-RateLimit-Remaining"] = str(context.extra["rate_limit_remaining"])
            response.headers["X-RateLimit-Reset"] = str(context.extra["rate_limit_reset"])
        return response
