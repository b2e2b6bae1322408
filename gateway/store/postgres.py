"""PostgreSQL async connection pool, migrations and tenant CRUD."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from uuid import UUID

import asyncpg
import structlog

logger = structlog.get_logger()

_pool: asyncpg.Pool | None = None

# Whitelisted column names for dynamic UPDATE statements
_TENANT_COLUMNS = frozenset({"plan", "status", "password_hash"})

_TENANT_COLS = "id, email, plan, status, created_at, updated_at"

TENANT_STATUSES = frozenset({"active", "suspended", "deleted"})


class StoreUnavailable(Exception):
    """Raised when the database connection pool is not available."""
    pass


class DuplicateTenant(Exception):
    """Raised when a tenant email is already registered."""


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns to Python objects."""
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog",
    )


async def init_postgres(url: str, min_size: int = 2, max_size: int = 10):
    """Initialize PostgreSQL connection pool."""
    global _pool
    try:
        _pool = await asyncpg.create_pool(
            url, min_size=min_size, max_size=max_size, init=_init_connection,
        )
        logger.info("postgres_connected", min_size=min_size, max_size=max_size)
        return _pool
    except (OSError, asyncpg.PostgresError) as exc:
        logger.error("postgres_connect_failed", error=str(exc))
        _pool = None
        return None


def get_pool():
    """Return the current connection pool."""
    return _pool


def require_pool():
    """Return the pool or raise StoreUnavailable."""
    if _pool is None:
        raise StoreUnavailable("Database connection pool not initialized")
    return _pool


async def run_migrations() -> None:
    """Execute schema.sql and verify the RLS role."""
    if _pool is None:
        logger.warning("postgres_migrations_skipped", reason="no pool")
        return
    schema_path = Path(__file__).parent.parent / "models" / "schema.sql"
    sql = schema_path.read_text()
    from gateway.store.rls import ensure_rls_setup

    async with _pool.acquire() as conn:
        await ensure_rls_setup(conn)
        await conn.execute(sql)
    logger.info("postgres_migrations_complete")


def affected_rows(result: str) -> int:
    """Parse an asyncpg command tag like ``"DELETE 3"`` into 3."""
    parts = result.split()
    try:
        return int(parts[-1]) if parts else 0
    except ValueError:
        return 0


# --- Tenant CRUD ---

async def create_tenant(email: str, password_hash: str, plan: str) -> dict[str, Any]:
    """Insert a new tenant and return it (without the password hash)."""
    pool = require_pool()
    try:
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""INSERT INTO tenants (email, password_hash, plan)
                    VALUES ($1, $2, $3)
                    RETURNING {_TENANT_COLS}""",
                email, password_hash, plan,
            )
    except asyncpg.UniqueViolationError as exc:
        raise DuplicateTenant("Tenant email already registered") from exc
    return dict(row)


async def get_tenant(tenant_id: UUID) -> dict[str, Any] | None:
    """Fetch a tenant by ID."""
    pool = require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_TENANT_COLS} FROM tenants WHERE id = $1",
            tenant_id,
        )
        return dict(row) if row else None


async def get_tenant_credentials(email: str) -> dict[str, Any] | None:
    """Fetch a tenant by email including the password hash (login only)."""
    pool = require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_TENANT_COLS}, password_hash FROM tenants WHERE email = $1",
            email,
        )
        return dict(row) if row else None


async def list_tenants() -> list[dict[str, Any]]:
    """Fetch all non-deleted tenants (admin)."""
    pool = require_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"SELECT {_TENANT_COLS} FROM tenants WHERE status <> 'deleted'"
        )
        return [dict(row) for row in rows]


async def update_tenant(tenant_id: UUID, **fields) -> dict[str, Any] | None:
    """Update a tenant. Only non-None, whitelisted fields are updated."""
    pool = require_pool()
    set_clauses = []
    values = []
    idx = 1
    for key, val in fields.items():
        if val is not None:
            if key not in _TENANT_COLUMNS:
                raise ValueError(f"Invalid column name: {key}")
            if key == "status" and val not in TENANT_STATUSES:
                raise ValueError(f"Invalid tenant status: {val}")
            set_clauses.append(f"{key} = ${idx}")
            values.append(val)
            idx += 1
    if not set_clauses:
        return await get_tenant(tenant_id)
    set_clauses.append("updated_at = now()")
    values.append(tenant_id)
    sql = f"UPDATE tenants SET {', '.join(set_clauses)} WHERE id = ${idx} RETURNING {_TENANT_COLS}"
    async with pool.acquire() as conn:
        row = await conn.fetchrow(sql, *values)
        return dict(row) if row else None


async def delete_tenant(tenant_id: UUID) -> bool:
    """Delete a tenant; connections, keys, domains and audit entries cascade."""
    pool = require_pool()
    async with pool.acquire() as conn:
        result = await conn.execute("DELETE FROM tenants WHERE id = $1", tenant_id)
        return result == "DELETE 1"


async def close_postgres() -> None:
    """Close the PostgreSQL connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("postgres_closed")
