"""Upstream connection storage. Secrets arrive and leave as envelopes only."""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from gateway.store.postgres import require_pool
from gateway.store.rls import tenant_transaction

logger = structlog.get_logger()

_CONNECTION_COLS = (
    "id, tenant_id, name, base_url, identity_envelope, secret_envelope, "
    "aux_secret_envelope, status, created_at, updated_at"
)


async def create_connection(
    tenant_id: UUID,
    *,
    name: str,
    base_url: str,
    identity_envelope: str,
    secret_envelope: str,
    aux_secret_envelope: str | None = None,
) -> dict[str, Any]:
    async with tenant_transaction(tenant_id) as conn:
        row = await conn.fetchrow(
            f"""INSERT INTO upstream_connections
                (tenant_id, name, base_url, identity_envelope, secret_envelope, aux_secret_envelope)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING {_CONNECTION_COLS}""",
            tenant_id, name, base_url, identity_envelope, secret_envelope, aux_secret_envelope,
        )
        return dict(row)


async def get_connection(tenant_id: UUID, connection_id: UUID) -> dict[str, Any] | None:
    async with tenant_transaction(tenant_id) as conn:
        row = await conn.fetchrow(
            f"""SELECT {_CONNECTION_COLS} FROM upstream_connections
                WHERE id = $1 AND tenant_id = $2 AND status <> 'deleted'""",
            connection_id, tenant_id,
        )
        return dict(row) if row else None


async def list_connections(tenant_id: UUID, *, active_only: bool = False) -> list[dict[str, Any]]:
    status_clause = "status = 'active'" if active_only else "status <> 'deleted'"
    async with tenant_transaction(tenant_id) as conn:
        rows = await conn.fetch(
            f"""SELECT {_CONNECTION_COLS} FROM upstream_connections
                WHERE tenant_id = $1 AND {status_clause}
                ORDER BY created_at""",
            tenant_id,
        )
        return [dict(r) for r in rows]


async def count_connections(tenant_id: UUID) -> int:
    async with tenant_transaction(tenant_id) as conn:
        return await conn.fetchval(
            "SELECT COUNT(*) FROM upstream_connections WHERE tenant_id = $1 AND status <> 'deleted'",
            tenant_id,
        )


async def replace_secret(
    tenant_id: UUID,
    connection_id: UUID,
    *,
    secret_envelope: str,
    aux_secret_envelope: str | None = None,
) -> dict[str, Any] | None:
    """Replace the secret envelope(s) wholesale. Envelopes are never patched."""
    async with tenant_transaction(tenant_id) as conn:
        row = await conn.fetchrow(
            f"""UPDATE upstream_connections
                SET secret_envelope = $1, aux_secret_envelope = $2, updated_at = now()
                WHERE id = $3 AND tenant_id = $4 AND status <> 'deleted'
                RETURNING {_CONNECTION_COLS}""",
            secret_envelope, aux_secret_envelope, connection_id, tenant_id,
        )
        return dict(row) if row else None


async def delete_connection(tenant_id: UUID, connection_id: UUID) -> list[str] | None:
    """Soft-delete a connection and revoke every key bound to it.

    Returns the digests of the revoked keys (for cache eviction), or None if
    the connection does not exist.
    """
    async with tenant_transaction(tenant_id) as conn:
        result = await conn.execute(
            """UPDATE upstream_connections SET status = 'deleted', updated_at = now()
               WHERE id = $1 AND tenant_id = $2 AND status <> 'deleted'""",
            connection_id, tenant_id,
        )
        if result != "UPDATE 1":
            return None
        rows = await conn.fetch(
            """UPDATE api_keys SET status = 'revoked'
               WHERE connection_id = $1 AND tenant_id = $2 AND status = 'active'
               RETURNING key_digest""",
            connection_id, tenant_id,
        )
        return [r["key_digest"] for r in rows]
