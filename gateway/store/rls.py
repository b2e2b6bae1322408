"""Row-Level Security tenant scoping for PostgreSQL.

``tenant_transaction`` acquires a pooled connection, opens a transaction and
switches to the restricted ``gateway_app`` role with the GUC
``app.current_tenant_id`` set, so the policies in ``schema.sql`` hide every
other tenant's rows:

    SET LOCAL ROLE gateway_app
    SELECT set_config('app.current_tenant_id', $1, true)

Both settings are transaction-local. Store functions still filter by
``tenant_id`` explicitly; RLS is the second wall, not the only one.
"""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from gateway.store.postgres import StoreUnavailable, get_pool

if TYPE_CHECKING:
    import asyncpg

logger = structlog.get_logger()

RLS_APP_ROLE = "gateway_app"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)

_PG_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def validate_tenant_id(tenant_id: str | UUID) -> str:
    """Return the lowercased tenant UUID string or raise ``ValueError``."""
    if isinstance(tenant_id, UUID):
        return str(tenant_id)
    if not isinstance(tenant_id, str):
        raise ValueError("tenant_id must be a string")
    normalised = tenant_id.strip().lower()
    if not normalised:
        raise ValueError("tenant_id must not be empty")
    if not _UUID_RE.match(normalised):
        safe_id = tenant_id[:50].encode("ascii", "replace").decode()
        raise ValueError(f"tenant_id is not a valid UUID: {safe_id!r}")
    return normalised


_rls_enabled_cache: bool | None = None


def _is_rls_enabled() -> bool:
    global _rls_enabled_cache
    if _rls_enabled_cache is not None:
        return _rls_enabled_cache
    from gateway.config.loader import get_settings  # noqa: PLC0415

    _rls_enabled_cache = get_settings().rls_enabled
    return _rls_enabled_cache


def set_rls_cache(enabled: bool) -> None:
    """Set the cached ``rls_enabled`` value. Called on SIGHUP reload."""
    global _rls_enabled_cache
    _rls_enabled_cache = enabled


@asynccontextmanager
async def tenant_transaction(tenant_id: str | UUID):
    """Acquire a transactional connection scoped to *tenant_id*.

    Usage::

        async with tenant_transaction(tenant_id) as conn:
            rows = await conn.fetch("SELECT * FROM custom_domains")
    """
    validated = validate_tenant_id(tenant_id)
    pool = get_pool()
    if pool is None:
        raise StoreUnavailable("Database pool not initialized")
    async with pool.acquire() as conn:
        async with conn.transaction():
            if _is_rls_enabled():
                await conn.execute(f"SET LOCAL ROLE {RLS_APP_ROLE}")
                await conn.execute(
                    "SELECT set_config('app.current_tenant_id', $1, true)",
                    validated,
                )
            else:
                logger.warning("rls_disabled", tenant_id=validated)
            yield conn


def _validate_pg_identifier(name: str) -> str:
    """DDL does not take ``$1`` placeholders; only safe identifiers pass."""
    if not isinstance(name, str) or not _PG_IDENT_RE.match(name):
        raise ValueError(f"Invalid PostgreSQL identifier: {name!r}")
    return name


async def ensure_rls_setup(conn: asyncpg.Connection) -> None:
    """Create the restricted role if missing and let the owner assume it."""
    safe_role = _validate_pg_identifier(RLS_APP_ROLE)

    role_exists = await conn.fetchval(
        "SELECT 1 FROM pg_roles WHERE rolname = $1", safe_role
    )
    if not role_exists:
        await conn.execute(f"CREATE ROLE {safe_role} NOLOGIN")
        logger.info("rls_role_created", role=safe_role)

    current_user = await conn.fetchval("SELECT current_user")
    safe_user = _validate_pg_identifier(current_user)
    await conn.execute(f"GRANT {safe_role} TO {safe_user}")
    logger.info("rls_setup_verified", app_role=safe_role, owner=safe_user)
