"""Custom domain storage with compare-and-set status transitions."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg
import structlog

from gateway.errors import DomainAlreadyRegistered
from gateway.store.postgres import require_pool
from gateway.store.rls import tenant_transaction

logger = structlog.get_logger()

# Whitelisted column names for dynamic UPDATE statements
_DOMAIN_COLUMNS = frozenset({
    "verified_at", "ssl_status", "ssl_requested_at", "ssl_expires_at", "last_check_at",
})

_SELECT_COLS = (
    "id, tenant_id, hostname, status, verification_token, verification_record, "
    "verified_at, ssl_status, ssl_requested_at, ssl_expires_at, last_check_at, "
    "check_count, created_at, updated_at"
)


async def create_domain(
    tenant_id: UUID,
    *,
    hostname: str,
    verification_token: str,
    verification_record: str,
) -> dict[str, Any]:
    """Insert a domain in ``pending_verification``.

    The unique constraint on ``hostname`` is the final arbiter when two
    tenants race for the same name.
    """
    try:
        async with tenant_transaction(tenant_id) as conn:
            row = await conn.fetchrow(
                f"""INSERT INTO custom_domains
                    (tenant_id, hostname, verification_token, verification_record)
                    VALUES ($1, $2, $3, $4)
                    RETURNING {_SELECT_COLS}""",
                tenant_id, hostname, verification_token, verification_record,
            )
    except asyncpg.UniqueViolationError as exc:
        raise DomainAlreadyRegistered() from exc
    return dict(row)


async def get_domain(tenant_id: UUID, domain_id: UUID) -> dict[str, Any] | None:
    async with tenant_transaction(tenant_id) as conn:
        row = await conn.fetchrow(
            f"SELECT {_SELECT_COLS} FROM custom_domains WHERE id = $1 AND tenant_id = $2",
            domain_id, tenant_id,
        )
        return dict(row) if row else None


async def get_domain_unscoped(domain_id: UUID) -> dict[str, Any] | None:
    """Admin and poller lookup across tenants."""
    pool = require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_SELECT_COLS} FROM custom_domains WHERE id = $1", domain_id,
        )
        return dict(row) if row else None


async def list_domains(tenant_id: UUID) -> list[dict[str, Any]]:
    async with tenant_transaction(tenant_id) as conn:
        rows = await conn.fetch(
            f"SELECT {_SELECT_COLS} FROM custom_domains WHERE tenant_id = $1 ORDER BY created_at DESC",
            tenant_id,
        )
        return [dict(r) for r in rows]


async def count_domains(tenant_id: UUID) -> int:
    """Count domains that occupy a quota slot (terminal failures do not)."""
    async with tenant_transaction(tenant_id) as conn:
        return await conn.fetchval(
            """SELECT COUNT(*) FROM custom_domains
               WHERE tenant_id = $1 AND status <> 'verification_failed'""",
            tenant_id,
        )


async def hostname_exists(hostname: str) -> bool:
    """Global uniqueness check; hostnames are unique across all tenants."""
    pool = require_pool()
    async with pool.acquire() as conn:
        found = await conn.fetchval(
            "SELECT 1 FROM custom_domains WHERE hostname = $1", hostname,
        )
        return found is not None


async def get_active_by_hostname(hostname: str) -> dict[str, Any] | None:
    """Routing lookup. Only ``active`` domains resolve."""
    pool = require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_SELECT_COLS} FROM custom_domains WHERE hostname = $1 AND status = 'active'",
            hostname,
        )
        return dict(row) if row else None


async def record_check(tenant_id: UUID, domain_id: UUID, checked_at: datetime) -> dict[str, Any] | None:
    """Record a verification attempt that did not change the status."""
    async with tenant_transaction(tenant_id) as conn:
        row = await conn.fetchrow(
            f"""UPDATE custom_domains
                SET check_count = check_count + 1, last_check_at = $1, updated_at = now()
                WHERE id = $2 AND tenant_id = $3
                RETURNING {_SELECT_COLS}""",
            checked_at, domain_id, tenant_id,
        )
        return dict(row) if row else None


async def claim_and_update(
    domain_id: UUID,
    *,
    expected_status: str,
    new_status: str,
    increment_check: bool = False,
    **fields: Any,
) -> dict[str, Any] | None:
    """Move a domain from *expected_status* to *new_status* atomically.

    Returns the updated row, or None when another caller already moved it.
    Every status change goes through here (``WHERE status = $expected``).
    """
    pool = require_pool()

    set_clauses = ["status = $1", "updated_at = now()"]
    values: list[Any] = [new_status]
    idx = 2

    if increment_check:
        set_clauses.append("check_count = check_count + 1")

    for key, val in fields.items():
        if val is not None:
            if key not in _DOMAIN_COLUMNS:
                raise ValueError(f"Invalid column name: {key}")
            set_clauses.append(f"{key} = ${idx}")
            values.append(val)
            idx += 1

    values.append(domain_id)
    values.append(expected_status)
    where = f"WHERE id = ${idx} AND status = ${idx + 1}"

    sql = f"UPDATE custom_domains SET {', '.join(set_clauses)} {where} RETURNING {_SELECT_COLS}"

    async with pool.acquire() as conn:
        row = await conn.fetchrow(sql, *values)
    return dict(row) if row else None


async def delete_domain(tenant_id: UUID, domain_id: UUID) -> dict[str, Any] | None:
    async with tenant_transaction(tenant_id) as conn:
        row = await conn.fetchrow(
            f"DELETE FROM custom_domains WHERE id = $1 AND tenant_id = $2 RETURNING {_SELECT_COLS}",
            domain_id, tenant_id,
        )
        return dict(row) if row else None


async def list_pending_ssl() -> list[dict[str, Any]]:
    """Domains awaiting certificate issuance (SSL poller)."""
    pool = require_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"SELECT {_SELECT_COLS} FROM custom_domains WHERE status = 'pending_ssl' ORDER BY updated_at ASC",
        )
        return [dict(r) for r in rows]


async def list_expired_active(now: datetime) -> list[dict[str, Any]]:
    """Active domains whose certificate has passed its expiry."""
    pool = require_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"""SELECT {_SELECT_COLS} FROM custom_domains
                WHERE status = 'active' AND ssl_expires_at IS NOT NULL AND ssl_expires_at < $1""",
            now,
        )
        return [dict(r) for r in rows]
