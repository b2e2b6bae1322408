"""Health and readiness endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from gateway.store import postgres as pg_store
from gateway.store import redis as redis_store

logger = structlog.get_logger()
router = APIRouter()


async def _check_postgres() -> bool:
    pool = pg_store.get_pool()
    if pool is None:
        return False
    try:
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1
    except Exception as exc:
        logger.warning("health_postgres_failed", error=str(exc))
        return False


@router.get("/health")
async def health():
    """Liveness plus dependency status. Always 200."""
    redis_ok = await redis_store.ping()
    postgres_ok = await _check_postgres()

    return {
        "status": "healthy" if (redis_ok and postgres_ok) else "degraded",
        "gateway": "up",
        "redis": "up" if redis_ok else "down",
        "postgres": "up" if postgres_ok else "down",
    }


@router.get("/ready")
async def ready():
    """Readiness: 200 only when Redis and PostgreSQL are reachable."""
    redis_ok = await redis_store.ping()
    postgres_ok = await _check_postgres()

    if redis_ok and postgres_ok:
        return {"status": "ready"}

    return JSONResponse(
        status_code=503,
        content={
            "status": "not_ready",
            "redis": "up" if redis_ok else "down",
            "postgres": "up" if postgres_ok else "down",
        },
    )
