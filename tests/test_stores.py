"""Unit tests for the PostgreSQL store modules against a mocked pool."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import asyncpg
import pytest

import gateway.store.postgres as pg_store
from gateway.errors import DomainAlreadyRegistered
from gateway.store import api_keys as api_key_store
from gateway.store import audit as audit_store
from gateway.store import connections as connection_store
from gateway.store import domains as domain_store

TENANT_ID = uuid4()
NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestPoolNonePaths:
    """Helpers raise StoreUnavailable when no pool is configured."""

    @pytest.fixture(autouse=True)
    def _ensure_no_pool(self):
        original = pg_store._pool
        pg_store._pool = None
        yield
        pg_store._pool = original

    @pytest.mark.asyncio
    async def test_tenant_crud(self):
        with pytest.raises(pg_store.StoreUnavailable):
            await pg_store.get_tenant(TENANT_ID)
        with pytest.raises(pg_store.StoreUnavailable):
            await pg_store.create_tenant("a@example.com", "hash", "free")

    @pytest.mark.asyncio
    async def test_scoped_store(self):
        with pytest.raises(pg_store.StoreUnavailable):
            await connection_store.list_connections(TENANT_ID)

    @pytest.mark.asyncio
    async def test_unscoped_store(self):
        with pytest.raises(pg_store.StoreUnavailable):
            await api_key_store.find_active_by_digest("0" * 64)

    def test_affected_rows(self):
        assert pg_store.affected_rows("DELETE 3") == 3
        assert pg_store.affected_rows("") == 0
        assert pg_store.affected_rows("UPDATE x") == 0


class TestTenants:
    @pytest.mark.asyncio
    async def test_duplicate_email(self, mock_pool):
        _, conn, _ = mock_pool
        conn.fetchrow = AsyncMock(side_effect=asyncpg.UniqueViolationError("dup"))
        with pytest.raises(pg_store.DuplicateTenant):
            await pg_store.create_tenant("a@example.com", "hash", "free")

    @pytest.mark.asyncio
    async def test_update_whitelist(self, mock_pool):
        with pytest.raises(ValueError):
            await pg_store.update_tenant(TENANT_ID, email="x@example.com")
        with pytest.raises(ValueError):
            await pg_store.update_tenant(TENANT_ID, status="banana")
        with pytest.raises(ValueError):
            await pg_store.update_tenant(TENANT_ID, is_admin=True)

    @pytest.mark.asyncio
    async def test_update_builds_parameterized_sql(self, mock_pool):
        _, conn, _ = mock_pool
        conn.fetchrow = AsyncMock(return_value={"id": TENANT_ID, "plan": "pro"})
        await pg_store.update_tenant(TENANT_ID, plan="pro", status=None)
        sql, *args = conn.fetchrow.await_args.args
        assert "plan = $1" in sql
        assert "status" not in sql.split("RETURNING")[0]
        assert args == ["pro", TENANT_ID]

    @pytest.mark.asyncio
    async def test_password_hash_only_on_credentials_lookup(self, mock_pool):
        _, conn, _ = mock_pool
        await pg_store.get_tenant(TENANT_ID)
        assert "password_hash" not in conn.fetchrow.await_args.args[0]
        await pg_store.get_tenant_credentials("a@example.com")
        assert "password_hash" in conn.fetchrow.await_args.args[0]


class TestConnections:
    @pytest.mark.asyncio
    async def test_scoped_by_tenant(self, mock_pool):
        _, conn, _ = mock_pool
        connection_id = uuid4()
        await connection_store.get_connection(TENANT_ID, connection_id)
        sql, *args = conn.fetchrow.await_args.args
        assert "tenant_id = $2" in sql
        assert args == [connection_id, TENANT_ID]
        assert conn.execute.await_args_list[0].args[0].startswith("SET LOCAL ROLE")

    @pytest.mark.asyncio
    async def test_delete_revokes_keys(self, mock_pool):
        _, conn, _ = mock_pool
        conn.execute = AsyncMock(return_value="UPDATE 1")
        conn.fetch = AsyncMock(return_value=[{"key_digest": "a" * 64}, {"key_digest": "b" * 64}])
        digests = await connection_store.delete_connection(TENANT_ID, uuid4())
        assert digests == ["a" * 64, "b" * 64]
        assert "SET status = 'revoked'" in conn.fetch.await_args.args[0]

    @pytest.mark.asyncio
    async def test_delete_missing(self, mock_pool):
        _, conn, _ = mock_pool
        conn.execute = AsyncMock(return_value="UPDATE 0")
        assert await connection_store.delete_connection(TENANT_ID, uuid4()) is None
        conn.fetch.assert_not_awaited()


class TestApiKeys:
    @pytest.mark.asyncio
    async def test_revoke_only_active(self, mock_pool):
        _, conn, _ = mock_pool
        assert await api_key_store.revoke_api_key(TENANT_ID, uuid4()) is None
        assert "status = 'active'" in conn.fetchrow.await_args.args[0]

    @pytest.mark.asyncio
    async def test_find_by_digest_requires_active_key(self, mock_pool):
        _, conn, _ = mock_pool
        conn.fetchrow = AsyncMock(return_value={"api_key_id": uuid4(), "tenant_status": "active"})
        record = await api_key_store.find_active_by_digest("f" * 64)
        assert record["tenant_status"] == "active"
        sql, digest = conn.fetchrow.await_args.args
        assert "k.status = 'active'" in sql
        assert digest == "f" * 64

    @pytest.mark.asyncio
    async def test_active_digests_for_tenant(self, mock_pool):
        _, conn, _ = mock_pool
        conn.fetch = AsyncMock(return_value=[{"key_digest": "c" * 64}])
        assert await api_key_store.active_key_digests(TENANT_ID) == ["c" * 64]
        sql, tenant_id = conn.fetch.await_args.args
        assert "status = 'active'" in sql
        assert tenant_id == TENANT_ID

    @pytest.mark.asyncio
    async def test_active_digests_for_connection(self, mock_pool):
        _, conn, _ = mock_pool
        connection_id = uuid4()
        await api_key_store.active_key_digests(TENANT_ID, connection_id)
        sql, *args = conn.fetch.await_args.args
        assert "connection_id = $2" in sql
        assert args == [TENANT_ID, connection_id]


class TestDomains:
    @pytest.mark.asyncio
    async def test_create_unique_violation(self, mock_pool):
        _, conn, _ = mock_pool
        conn.fetchrow = AsyncMock(side_effect=asyncpg.UniqueViolationError("dup"))
        with pytest.raises(DomainAlreadyRegistered):
            await domain_store.create_domain(
                TENANT_ID, hostname="api.acme.com", verification_token="t", verification_record="r",
            )

    @pytest.mark.asyncio
    async def test_claim_and_update_is_compare_and_set(self, mock_pool):
        _, conn, _ = mock_pool
        domain_id = uuid4()
        conn.fetchrow = AsyncMock(return_value={"id": domain_id, "status": "pending_ssl"})

        row = await domain_store.claim_and_update(
            domain_id,
            expected_status="pending_verification",
            new_status="pending_ssl",
            increment_check=True,
            verified_at=NOW,
            ssl_expires_at=None,
        )

        assert row["status"] == "pending_ssl"
        sql, *args = conn.fetchrow.await_args.args
        assert "status = $1" in sql
        assert "check_count = check_count + 1" in sql
        assert "verified_at = $2" in sql
        assert "ssl_expires_at" not in sql.split("WHERE")[0]
        assert "WHERE id = $3 AND status = $4" in sql
        assert args == ["pending_ssl", NOW, domain_id, "pending_verification"]

    @pytest.mark.asyncio
    async def test_claim_lost_race(self, mock_pool):
        assert await domain_store.claim_and_update(
            uuid4(), expected_status="pending_ssl", new_status="active",
        ) is None

    @pytest.mark.asyncio
    async def test_claim_rejects_unknown_column(self, mock_pool):
        with pytest.raises(ValueError):
            await domain_store.claim_and_update(
                uuid4(), expected_status="active", new_status="suspended", tenant_id=uuid4(),
            )


class TestAuditStore:
    @pytest.mark.asyncio
    async def test_query_filters_and_clamps(self, mock_pool):
        _, conn, _ = mock_pool
        conn.fetchval = AsyncMock(return_value=7)
        rows, total = await audit_store.query_audit_entries(
            TENANT_ID, limit=500, offset=-3, action="domain.create", start_time=NOW,
        )
        assert total == 7
        sql, *args = conn.fetch.await_args.args
        assert "action = $2" in sql
        assert "created_at >= $3" in sql
        assert "ORDER BY created_at DESC" in sql
        assert args == [TENANT_ID, "domain.create", NOW, 100, 0]

    @pytest.mark.asyncio
    async def test_export_is_oldest_first(self, mock_pool):
        _, conn, _ = mock_pool
        await audit_store.export_audit_entries(TENANT_ID, NOW, NOW)
        sql = conn.fetch.await_args.args[0]
        assert "created_at >= $2" in sql and "created_at <= $3" in sql
        assert "ORDER BY created_at ASC" in sql

    @pytest.mark.asyncio
    async def test_purge(self, mock_pool):
        _, conn, _ = mock_pool
        conn.execute = AsyncMock(return_value="DELETE 12")
        assert await audit_store.purge_older_than(TENANT_ID, 30) == 12
        sql, tenant, days = conn.execute.await_args.args
        assert "make_interval(days => $2)" in sql
        assert days == 30

    @pytest.mark.asyncio
    async def test_purge_refuses_non_positive_days(self, mock_pool):
        pool, _, _ = mock_pool
        assert await audit_store.purge_older_than(TENANT_ID, 0) == 0
        pool.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_insert_errors_propagate(self, mock_pool):
        _, conn, _ = mock_pool
        conn.executemany = AsyncMock(side_effect=asyncpg.PostgresError("boom"))
        entry = {
            "tenant_id": TENANT_ID, "actor_id": "a", "actor_type": "tenant",
            "action": "auth.login", "created_at": NOW,
        }
        with pytest.raises(asyncpg.PostgresError):
            await audit_store.insert_audit_entries([entry])

    @pytest.mark.asyncio
    async def test_constraint_violation_skips_only_bad_row(self, mock_pool):
        _, conn, _ = mock_pool
        conn.executemany = AsyncMock(side_effect=asyncpg.ForeignKeyViolationError("fk"))
        conn.execute = AsyncMock(side_effect=[None, asyncpg.ForeignKeyViolationError("fk"), None])
        gone = uuid4()
        entries = [
            {"tenant_id": tenant, "actor_id": "system", "actor_type": "system",
             "action": "rate_limit.exceeded", "created_at": NOW}
            for tenant in (TENANT_ID, gone, TENANT_ID)
        ]
        assert await audit_store.insert_audit_entries(entries) == 1
        assert conn.execute.await_count == 3
        assert [c.args[1] for c in conn.execute.await_args_list] == [TENANT_ID, gone, TENANT_ID]

    @pytest.mark.asyncio
    async def test_clean_batch_is_one_statement(self, mock_pool):
        _, conn, _ = mock_pool
        conn.executemany = AsyncMock()
        entry = {
            "tenant_id": TENANT_ID, "actor_id": "a", "actor_type": "tenant",
            "action": "auth.login", "created_at": NOW,
        }
        assert await audit_store.insert_audit_entries([entry, entry]) == 0
        assert len(conn.executemany.await_args.args[1]) == 2
        conn.execute.assert_not_awaited()
