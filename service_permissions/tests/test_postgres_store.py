"""
Unit tests for the PostgreSQL permission store.
"""

from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from shared.errors import AccessLayerException
from service_permissions.app.storage.base import PROTECTED_ENTITY_TYPES
from service_permissions.app.storage.postgres import SCHEMA, PostgreSQLPermissionStore


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=1)
    return conn


@pytest.fixture
def pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.close = AsyncMock()
    return pool


@pytest.fixture
def store(pool):
    store = PostgreSQLPermissionStore("postgresql://localhost/test")
    store.pool = pool
    return store


class TestPostgreSQLPermissionStore:
    """Test cases for PostgreSQLPermissionStore."""

    @pytest.mark.asyncio
    async def test_start_creates_tables_and_marks_ready(self, pool, conn):
        store = PostgreSQLPermissionStore("postgresql://localhost/test")
        listener = AsyncMock()
        store.on_ready("entitlements", listener)

        with patch("asyncpg.create_pool", AsyncMock(return_value=pool)):
            await store.start()

        assert conn.execute.await_count == len(SCHEMA)
        assert all(store.is_ready(t) for t in PROTECTED_ENTITY_TYPES)
        listener.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_failure(self):
        store = PostgreSQLPermissionStore("postgresql://localhost/test")

        with patch("asyncpg.create_pool", AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(AccessLayerException) as exc_info:
                await store.start()

        assert exc_info.value.code == "POSTGRES_START_FAILED"
        assert not store.is_ready("entitlements")

    @pytest.mark.asyncio
    async def test_command_tags(self, store, conn):
        conn.execute.return_value = "DELETE 1"
        assert await store.delete_role("r1")

        conn.execute.return_value = "DELETE 0"
        assert not await store.delete_role("r1")

        conn.execute.return_value = "DELETE 3"
        assert await store.delete_memberships(role_id="r1") == 3

    @pytest.mark.asyncio
    async def test_rulesets_for_no_roles_skips_query(self, store, pool):
        assert await store.role_rulesets_for_roles([]) == []
        pool.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_entitlement_rows(self, store, conn):
        conn.fetch.return_value = [{
            "id": "e1", "name": "view-roles", "group": "roles", "description": "See roles",
            "applies_to": ("role",), "permissions": ("role:read:name",),
            "features": (), "default_feature_scopes": ("*",),
            "created_at": NOW, "updated_at": NOW,
        }]

        [entitlement] = await store.all_entitlements()

        assert entitlement.name == "view-roles"
        assert entitlement.applies_to == ["role"]
        assert entitlement.default_feature_scopes == ["*"]

    @pytest.mark.asyncio
    async def test_account_ruleset_lookup(self, store, conn):
        conn.fetchrow.return_value = {
            "id": "as1", "account": "alice", "entitlement": "read-age",
            "target_attribute": "t1", "feature_scopes": ["eu"], "created_at": NOW,
        }

        ruleset = await store.find_account_ruleset("alice", "read-age", "t1")

        assert ruleset.target_attribute == "t1"
        assert ruleset.feature_scopes == ["eu"]
        assert conn.fetchrow.await_args.args[1:] == ("alice", "read-age", "t1")

    @pytest.mark.asyncio
    async def test_role_cascade_runs_in_one_transaction(self, store, conn):
        conn.execute.return_value = "DELETE 1"

        assert await store.delete_role_cascade("r1")

        conn.transaction.assert_called_once()
        assert [c.args[0] for c in conn.execute.await_args_list] == [
            "DELETE FROM role_rulesets WHERE role = $1",
            "DELETE FROM role_account WHERE role = $1",
            "DELETE FROM role WHERE id = $1",
        ]

    @pytest.mark.asyncio
    async def test_account_cascade_counts(self, store, conn):
        conn.execute.side_effect = ["DELETE 2", "DELETE 1"]

        assert await store.delete_account_cascade("alice") == (2, 1)
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_cascade_failure_reaches_transaction(self, store, conn):
        conn.execute.side_effect = ["DELETE 2", OSError("connection lost")]

        with pytest.raises(OSError):
            await store.delete_role_cascade("r1")

        exc_type = conn.transaction.return_value.__aexit__.await_args.args[0]
        assert exc_type is OSError

    @pytest.mark.asyncio
    async def test_missing_role(self, store):
        assert await store.get_role("ghost") is None

    @pytest.mark.asyncio
    async def test_health_check(self, store, conn):
        assert await store.health_check()

        conn.fetchval.side_effect = OSError("gone")

        assert not await store.health_check()

    @pytest.mark.asyncio
    async def test_stop_closes_pool(self, store, pool):
        await store.stop()

        pool.close.assert_awaited_once()
