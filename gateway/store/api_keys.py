"""API key storage. Only digests and display prefixes are persisted."""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from gateway.store.postgres import require_pool
from gateway.store.rls import tenant_transaction

logger = structlog.get_logger()

_KEY_COLS = "id, tenant_id, connection_id, key_prefix, name, status, last_used_at, created_at"


async def create_api_key(
    tenant_id: UUID,
    *,
    connection_id: UUID,
    key_digest: str,
    key_prefix: str,
    name: str = "",
) -> dict[str, Any]:
    async with tenant_transaction(tenant_id) as conn:
        row = await conn.fetchrow(
            f"""INSERT INTO api_keys (tenant_id, connection_id, key_digest, key_prefix, name)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING {_KEY_COLS}""",
            tenant_id, connection_id, key_digest, key_prefix, name,
        )
        return dict(row)


async def list_api_keys(tenant_id: UUID, connection_id: UUID) -> list[dict[str, Any]]:
    async with tenant_transaction(tenant_id) as conn:
        rows = await conn.fetch(
            f"""SELECT {_KEY_COLS} FROM api_keys
                WHERE tenant_id = $1 AND connection_id = $2
                ORDER BY created_at DESC""",
            tenant_id, connection_id,
        )
        return [dict(r) for r in rows]


async def revoke_api_key(tenant_id: UUID, key_id: UUID) -> dict[str, Any] | None:
    """Revoke an active key. Returns None if missing or already revoked."""
    async with tenant_transaction(tenant_id) as conn:
        row = await conn.fetchrow(
            f"""UPDATE api_keys SET status = 'revoked'
                WHERE id = $1 AND tenant_id = $2 AND status = 'active'
                RETURNING {_KEY_COLS}, key_digest""",
            key_id, tenant_id,
        )
        return dict(row) if row else None


async def active_key_digests(tenant_id: UUID, connection_id: UUID | None = None) -> list[str]:
    """Digests of the tenant's active keys, optionally only those bound to one connection."""
    sql = "SELECT key_digest FROM api_keys WHERE tenant_id = $1 AND status = 'active'"
    args: list[Any] = [tenant_id]
    if connection_id is not None:
        sql += " AND connection_id = $2"
        args.append(connection_id)
    async with tenant_transaction(tenant_id) as conn:
        rows = await conn.fetch(sql, *args)
        return [r["key_digest"] for r in rows]


async def find_active_by_digest(key_digest: str) -> dict[str, Any] | None:
    """Resolve a presented key's digest to its key, tenant and connection.

    Runs unscoped: the key itself is what identifies the tenant.
    """
    pool = require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """SELECT k.id AS api_key_id, k.tenant_id, k.connection_id,
                      t.status AS tenant_status, t.plan,
                      c.status AS connection_status, c.base_url,
                      c.identity_envelope, c.secret_envelope
               FROM api_keys k
               JOIN tenants t ON t.id = k.tenant_id
               JOIN upstream_connections c ON c.id = k.connection_id
               WHERE k.key_digest = $1 AND k.status = 'active'""",
            key_digest,
        )
        return dict(row) if row else None


async def touch_last_used(key_id: UUID) -> None:
    pool = require_pool()
    async with pool.acquire() as conn:
        await conn.execute("UPDATE api_keys SET last_used_at = now() WHERE id = $1", key_id)
