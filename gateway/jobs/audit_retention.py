"""Background task for audit entry retention cleanup."""

from __future__ import annotations

import asyncio

import structlog

from gateway.config.plans import PlanTable, get_plan_table
from gateway.store import audit as audit_store
from gateway.store.postgres import get_pool

logger = structlog.get_logger()

_RETENTION_CONCURRENCY = 3  # max concurrent delete operations


async def cleanup_once(plans: PlanTable | None = None, *, store=audit_store) -> int:
    """Purge every tenant's entries older than its plan's retention window.

    Returns the number of entries deleted. Per-tenant failures are logged and
    do not stop the other tenants.
    """
    pool = get_pool()
    if pool is None:
        logger.debug("audit_retention_skip", reason="no db pool")
        return 0
    plans = plans or get_plan_table()

    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT id, plan FROM tenants")

    sem = asyncio.Semaphore(_RETENTION_CONCURRENCY)
    total_deleted = 0

    async def _cleanup_one(row):
        nonlocal total_deleted
        async with sem:
            days = plans.get_limit(row["plan"]).audit_retention_days
            total_deleted += await store.purge_older_than(row["id"], days)

    results = await asyncio.gather(*[_cleanup_one(r) for r in rows], return_exceptions=True)

    failed = 0
    for result in results:
        if isinstance(result, Exception):
            failed += 1
            logger.error(
                "audit_retention_task_error",
                error=str(result),
                error_type=type(result).__name__,
            )
    if failed:
        logger.warning("audit_retention_partial_failure", failed=failed, total=len(rows))
    if total_deleted:
        logger.info("audit_retention_complete", deleted=total_deleted, tenants=len(rows))
    return total_deleted


async def run_retention_cleanup(interval_seconds: int) -> None:
    """Run :func:`cleanup_once` every *interval_seconds* until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await cleanup_once()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("audit_retention_error")
