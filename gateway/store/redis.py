"""Redis async connection pool with retry, plus small JSON cache helpers."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

_REDIS_URL_PASSWORD = re.compile(r"(rediss?://[^:]*:)[^@]+(@)")


def _redact_url(url: str) -> str:
    return _REDIS_URL_PASSWORD.sub(r"\1***\2", url)


_pool: aioredis.Redis | None = None
_MAX_RETRIES = 5
_BASE_DELAY = 0.5


async def init_redis(url: str, pool_size: int = 10) -> aioredis.Redis | None:
    """Initialize the Redis pool with exponential backoff retry."""
    global _pool
    for attempt in range(1, _MAX_RETRIES + 1):
        try:
            _pool = aioredis.from_url(
                url,
                max_connections=pool_size,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await _pool.ping()
            logger.info("redis_connected", url=_redact_url(url), pool_size=pool_size)
            return _pool
        except (aioredis.ConnectionError, OSError) as exc:
            delay = _BASE_DELAY * (2 ** (attempt - 1))
            logger.warning(
                "redis_connect_retry",
                attempt=attempt,
                max_retries=_MAX_RETRIES,
                delay=delay,
                error=str(exc),
            )
            if attempt == _MAX_RETRIES:
                logger.error("redis_connect_failed", error=str(exc))
                _pool = None
                return None
            await asyncio.sleep(delay)
    return None


def get_redis() -> aioredis.Redis | None:
    """Return the current Redis pool, or None if unavailable."""
    return _pool


async def ping() -> bool:
    if _pool is None:
        return False
    try:
        return await _pool.ping()
    except (aioredis.RedisError, OSError):
        return False


async def cache_get_json(key: str) -> Any | None:
    """Read a JSON value; a miss, a Redis error or bad JSON all return None."""
    if _pool is None:
        return None
    try:
        raw = await _pool.get(key)
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("cache_get_failed", key=key, error=str(exc))
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("cache_value_corrupt", key=key)
        return None


async def cache_set_json(key: str, value: Any, ttl_seconds: int) -> None:
    if _pool is None:
        return
    try:
        await _pool.set(key, json.dumps(value, default=str), ex=ttl_seconds)
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("cache_set_failed", key=key, error=str(exc))


async def cache_delete(key: str) -> None:
    if _pool is None:
        return
    try:
        await _pool.delete(key)
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("cache_delete_failed", key=key, error=str(exc))


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
        logger.info("redis_closed")
