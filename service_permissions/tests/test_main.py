"""
Unit tests for the permissions service facade and its admin operations.
"""

import pytest
from unittest.mock import MagicMock

from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.test_helpers import TestDataFactory, TestEnvironment, create_test_service
from service_permissions.app.cache.redis_cache import RedisGrantCache
from service_permissions.app.main import PROTECTED_SCHEMAS, PermissionsService, create_service
from service_permissions.app.storage.memory import InMemoryPermissionStore
from service_permissions.app.storage.postgres import PostgreSQLPermissionStore


@pytest.fixture
async def service():
    service = await create_test_service()
    yield service
    await service.stop()


@pytest.fixture
def cache():
    cache = MagicMock(spec=RedisGrantCache)
    cache.get_rulesets.return_value = None
    cache.get_entitlements.return_value = None
    cache.health_check.return_value = True
    cache.get_stats.return_value = {"hits": 0, "misses": 0}
    return cache


class TestPermissionsService:
    """Test cases for service wiring."""

    def test_defaults_to_postgres_store(self):
        service = create_service(TestEnvironment.get_test_config(), metrics=TestEnvironment.get_metrics())

        assert isinstance(service.store, PostgreSQLPermissionStore)
        assert service.cache is None

    def test_cache_enabled_from_config(self):
        config = TestEnvironment.get_test_config(enable_grant_cache=True, grant_cache_ttl_seconds=60)

        service = PermissionsService(config, store=InMemoryPermissionStore(),
                                     metrics=TestEnvironment.get_metrics())

        assert isinstance(service.cache, RedisGrantCache)
        assert service.cache.ruleset_ttl == 60
        assert service.cache.entitlement_ttl == 3600

    @pytest.mark.asyncio
    async def test_start_on_already_provisioned_store(self):
        store = InMemoryPermissionStore()
        await store.start()
        service = PermissionsService(TestEnvironment.get_test_config(), store=store,
                                     metrics=TestEnvironment.get_metrics())

        await service.start()
        await service.register_entitlement("curve-reader", "Read curves", "tests", permissions=["curve:read"])

        assert service.catalog.initializer.flushed
        assert await store.get_entitlement("view-roles") is not None
        assert await store.get_entitlement("curve-reader") is not None
        await service.stop()

    @pytest.mark.asyncio
    async def test_protected_types_registered(self, service):
        for entity_type in PROTECTED_SCHEMAS:
            assert service.entities.has(entity_type)
        assert "target_attribute" in service.entities.fields("role_rulesets")

    @pytest.mark.asyncio
    async def test_built_in_entitlements_declared(self, service):
        view_roles = await service.catalog.get("view-roles")
        manage_roles = await service.catalog.get("manage-roles")
        manage_members = await service.catalog.get("manage-members")

        assert view_roles.permissions == ["role:read:name", "role:read:description"]
        assert view_roles.applies_to == ["role"]
        assert manage_roles.applies_to == ["role"]
        assert manage_roles.features == ["manage-roles"]
        assert manage_members.permissions == []

    @pytest.mark.asyncio
    async def test_generic_mutation_of_protected_types_blocked(self, service):
        admin = TestDataFactory.create_admin()
        record = TestDataFactory.create_record("role_rulesets", {"id": "rs1"}, [])

        for action in ["update", "delete", "archive", "restore-archive", "delete-version", "restore-version"]:
            assert await service.account_can_do(admin, [record], action) == [False]
        assert await service.account_can_do(admin, [record], "read") == [True]

    @pytest.mark.asyncio
    async def test_health_check(self, cache):
        service = await create_test_service(cache=cache)

        health = await service.health_check()

        assert health["catalog"] == "flushed"
        assert health["cache"] == "ok"
        cache.start.assert_awaited_once()
        await service.stop()
        cache.stop.assert_awaited_once()


class TestRoleAdministration:
    """Test cases for role operations."""

    @pytest.mark.asyncio
    async def test_create_and_update_role(self, service):
        role = await service.create_role("Editors", "Edit things")

        updated = await service.update_role(role.id, description="Edit everything")

        assert updated.name == "Editors"
        assert (await service.get_role(role.id)).description == "Edit everything"

    @pytest.mark.asyncio
    async def test_role_name_required(self, service):
        with pytest.raises(ValidationError):
            await service.create_role("")

    @pytest.mark.asyncio
    async def test_update_missing_role(self, service):
        with pytest.raises(NotFoundError):
            await service.update_role("ghost", name="x")

    @pytest.mark.asyncio
    async def test_search_roles(self, service):
        for name in ["Editors", "Viewers", "Credit Editors"]:
            await service.create_role(name)

        found = await service.search_roles("editor")

        assert [r.name for r in found] == ["Credit Editors", "Editors"]
        assert len(await service.search_roles("", offset=1, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_delete_role_cascades(self, service):
        role = await service.create_role("Editors")
        await service.grant_role(role.id, "alice")
        await service.grant_role_ruleset(role.id, "everything", "t1")

        await service.delete_role(role.id)

        assert await service.get_role(role.id) is None
        assert await service.accounts_in_role(role.id) == []
        assert service.store.role_rulesets == {}
        assert await service.roles_of("alice") == []

    @pytest.mark.asyncio
    async def test_delete_missing_role(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_role("ghost")


class TestMembershipAdministration:
    """Test cases for memberships."""

    @pytest.mark.asyncio
    async def test_grant_and_revoke_role(self, service):
        role = await service.create_role("Editors")

        await service.grant_role(role.id, "alice")

        assert await service.is_in_role("alice", role.id)
        assert await service.accounts_in_role(role.id) == ["alice"]

        await service.revoke_role(role.id, "alice")

        assert not await service.is_in_role("alice", role.id)

    @pytest.mark.asyncio
    async def test_grant_role_is_idempotent(self, service):
        role = await service.create_role("Editors")

        first = await service.grant_role(role.id, "alice")
        second = await service.grant_role(role.id, "alice")

        assert first.id == second.id
        assert await service.accounts_in_role(role.id) == ["alice"]

    @pytest.mark.asyncio
    async def test_grant_unknown_role(self, service):
        with pytest.raises(NotFoundError):
            await service.grant_role("ghost", "alice")

    @pytest.mark.asyncio
    async def test_revoke_missing_membership(self, service):
        role = await service.create_role("Editors")

        with pytest.raises(NotFoundError) as exc_info:
            await service.revoke_role(role.id, "alice")

        assert exc_info.value.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_delete_account_cascades(self, service):
        role = await service.create_role("Editors")
        await service.grant_role(role.id, "alice")
        await service.grant_role(role.id, "bob")
        await service.grant_account_ruleset("alice", "read-age", "t1")

        await service.delete_account("alice")

        assert await service.accounts_in_role(role.id) == ["bob"]
        assert await service.store.account_rulesets_for_account("alice") == []


class TestRulesetAdministration:
    """Test cases for ruleset grants."""

    @pytest.mark.asyncio
    async def test_duplicate_role_ruleset_conflicts(self, service):
        role = await service.create_role("Editors")
        await service.grant_role_ruleset(role.id, "read-age", "t1")

        with pytest.raises(ConflictError):
            await service.grant_role_ruleset(role.id, "read-age", "t1")

        await service.grant_role_ruleset(role.id, "read-age", "t2")

    @pytest.mark.asyncio
    async def test_role_ruleset_needs_known_entitlement(self, service):
        role = await service.create_role("Editors")

        with pytest.raises(NotFoundError):
            await service.grant_role_ruleset(role.id, "ghost", "t1")

    @pytest.mark.asyncio
    async def test_revoke_role_ruleset(self, service):
        role = await service.create_role("Editors")
        await service.grant_role(role.id, "alice")
        await service.grant_role_ruleset(role.id, "read-age", "t1")
        record = TestDataFactory.create_record("testEntity", {"age": 3}, ["t1"])
        alice = TestDataFactory.create_account("alice")

        assert await service.filter_batch(alice, [record]) == [{"age": 3}]

        await service.revoke_role_ruleset(role.id, "read-age", "t1")

        assert await service.filter_batch(alice, [record]) == [{}]
        with pytest.raises(NotFoundError):
            await service.revoke_role_ruleset(role.id, "read-age", "t1")

    @pytest.mark.asyncio
    async def test_account_ruleset_lifecycle(self, service):
        ruleset = await service.grant_account_ruleset("alice", "curve-analyst", "t1", feature_scopes=["eu"])

        assert ruleset.feature_scopes == ["eu"]
        with pytest.raises(ConflictError):
            await service.grant_account_ruleset("alice", "curve-analyst", "t1")

        await service.revoke_account_ruleset("alice", "curve-analyst", "t1")

        with pytest.raises(NotFoundError):
            await service.revoke_account_ruleset("alice", "curve-analyst", "t1")


class TestCacheInvalidation:
    """Admin mutations drop the affected accounts' cached grants."""

    @pytest.fixture
    async def cached_service(self, cache):
        service = await create_test_service(cache=cache)
        yield service
        await service.stop()

    @pytest.mark.asyncio
    async def test_membership_changes_invalidate_account(self, cached_service, cache):
        role = await cached_service.create_role("Editors")

        await cached_service.grant_role(role.id, "alice")
        cache.invalidate_account.assert_awaited_with("alice")

        cache.invalidate_account.reset_mock()
        await cached_service.revoke_role(role.id, "alice")
        cache.invalidate_account.assert_awaited_once_with("alice")

    @pytest.mark.asyncio
    async def test_role_ruleset_invalidates_every_member(self, cached_service, cache):
        role = await cached_service.create_role("Editors")
        await cached_service.grant_role(role.id, "alice")
        await cached_service.grant_role(role.id, "bob")
        cache.invalidate_account.reset_mock()

        await cached_service.grant_role_ruleset(role.id, "read-age", "t1")

        invalidated = {c.args[0] for c in cache.invalidate_account.await_args_list}
        assert invalidated == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_account_changes_invalidate_account(self, cached_service, cache):
        await cached_service.grant_account_ruleset("alice", "read-age", "t1")
        cache.invalidate_account.assert_awaited_with("alice")

        cache.invalidate_account.reset_mock()
        await cached_service.delete_account("alice")
        cache.invalidate_account.assert_awaited_once_with("alice")

    @pytest.mark.asyncio
    async def test_entitlement_registration_invalidates_table(self, cached_service, cache):
        cache.invalidate_entitlements.reset_mock()

        await cached_service.register_entitlement("reader", "desc", "tests", [], ["curve:read"])

        cache.invalidate_entitlements.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resolution_goes_through_cache(self, cached_service, cache):
        await cached_service.account_can_do(
            TestDataFactory.create_account("alice"),
            [TestDataFactory.create_record("curve", {}, ["t1"])],
            "read"
        )

        cache.get_rulesets.assert_awaited_once_with("alice")
        cache.set_rulesets.assert_awaited_once()
