"""Audit entry PostgreSQL storage: batch insert, parameterized queries, purge."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg
import structlog

from gateway.store.postgres import affected_rows, require_pool
from gateway.store.rls import tenant_transaction

logger = structlog.get_logger()

MAX_QUERY_LIMIT = 100

_SELECT_COLS = (
    "id, tenant_id, actor_id, actor_type, action, resource_type, resource_id, "
    "details, ip_address, user_agent, created_at"
)


_INSERT_SQL = """INSERT INTO audit_entries
   (tenant_id, actor_id, actor_type, action, resource_type, resource_id,
    details, ip_address, user_agent, created_at)
   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)"""

# Errors that reject a single row rather than the connection
_ROW_ERRORS = (asyncpg.IntegrityConstraintViolationError, asyncpg.DataError)


async def insert_audit_entries(entries: list[dict[str, Any]]) -> int:
    """Insert a batch of entries and return how many rows were rejected.

    The batch goes in with one atomic ``executemany``. If a row violates a
    constraint (typically the tenant was deleted meanwhile), the batch is
    replayed row by row and only the offending rows are skipped. Any other
    error propagates to the caller (the flush step).
    """
    if not entries:
        return 0
    pool = require_pool()
    records = [
        (
            e["tenant_id"], e["actor_id"], e["actor_type"], e["action"],
            e.get("resource_type"), e.get("resource_id"), e.get("details"),
            e.get("ip_address"), e.get("user_agent"), e["created_at"],
        )
        for e in entries
    ]
    async with pool.acquire() as conn:
        try:
            await conn.executemany(_INSERT_SQL, records)
            return 0
        except _ROW_ERRORS as exc:
            logger.warning("audit_batch_rejected", count=len(records), error=type(exc).__name__)

        rejected = 0
        for record in records:
            try:
                await conn.execute(_INSERT_SQL, *record)
            except _ROW_ERRORS as exc:
                rejected += 1
                logger.error(
                    "audit_row_rejected",
                    tenant_id=str(record[0]),
                    action=record[3],
                    error=type(exc).__name__,
                )
        return rejected


def _build_filters(
    tenant_id: UUID,
    *,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    actor_type: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
) -> tuple[str, list[Any]]:
    conditions = ["tenant_id = $1"]
    values: list[Any] = [tenant_id]

    for column, value in (
        ("action", action),
        ("resource_type", resource_type),
        ("resource_id", resource_id),
        ("actor_type", actor_type),
    ):
        if value is not None:
            values.append(value)
            conditions.append(f"{column} = ${len(values)}")

    if start_time is not None:
        values.append(start_time)
        conditions.append(f"created_at >= ${len(values)}")
    if end_time is not None:
        values.append(end_time)
        conditions.append(f"created_at <= ${len(values)}")

    return " AND ".join(conditions), values


async def query_audit_entries(
    tenant_id: UUID,
    *,
    limit: int = 50,
    offset: int = 0,
    **filters: Any,
) -> tuple[list[dict[str, Any]], int]:
    """Newest-first page of entries plus the total count. Limit clamped to 100."""
    limit = max(1, min(limit, MAX_QUERY_LIMIT))
    offset = max(0, offset)
    where, values = _build_filters(tenant_id, **filters)
    idx = len(values) + 1

    async with tenant_transaction(tenant_id) as conn:
        total = await conn.fetchval(
            f"SELECT COUNT(*) FROM audit_entries WHERE {where}", *values,
        )
        rows = await conn.fetch(
            f"""SELECT {_SELECT_COLS} FROM audit_entries WHERE {where}
                ORDER BY created_at DESC, id DESC LIMIT ${idx} OFFSET ${idx + 1}""",
            *values, limit, offset,
        )
    return [dict(r) for r in rows], total or 0


async def export_audit_entries(
    tenant_id: UUID, start_time: datetime, end_time: datetime,
) -> list[dict[str, Any]]:
    """All entries in ``[start_time, end_time]``, oldest first."""
    where, values = _build_filters(tenant_id, start_time=start_time, end_time=end_time)
    async with tenant_transaction(tenant_id) as conn:
        rows = await conn.fetch(
            f"SELECT {_SELECT_COLS} FROM audit_entries WHERE {where} ORDER BY created_at ASC, id ASC",
            *values,
        )
    return [dict(r) for r in rows]


async def purge_older_than(tenant_id: UUID, retention_days: int) -> int:
    """Delete a tenant's entries older than *retention_days*. Returns count deleted.

    ``make_interval`` takes the day count as a bound parameter. Non-positive
    values are refused; they would match every row.
    """
    if retention_days < 1:
        logger.error("audit_retention_invalid_days", tenant_id=str(tenant_id), days=retention_days)
        return 0
    async with tenant_transaction(tenant_id) as conn:
        result = await conn.execute(
            """DELETE FROM audit_entries
               WHERE tenant_id = $1 AND created_at < now() - make_interval(days => $2)""",
            tenant_id, retention_days,
        )
    return affected_rows(result)
