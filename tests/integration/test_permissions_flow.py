"""
Integration tests for the permissions engine flow.
"""

import asyncio

import pytest

from shared.errors import PermissionDeniedError
from shared.test_helpers import TestDataFactory, TestEnvironment
from service_permissions.app.main import PermissionsService
from service_permissions.app.rules.models import Account, DataAction, PropertyAction
from service_permissions.app.storage.memory import InMemoryPermissionStore


class TestPermissionsFlow:
    """End-to-end flow: declare, start, administer, evaluate."""

    @pytest.fixture
    def types_file(self, tmp_path):
        return tmp_path / "entitlement_types.py"

    @pytest.fixture
    async def service(self, types_file):
        config = TestEnvironment.get_test_config(entitlement_types_file=str(types_file))
        service = PermissionsService(config, store=InMemoryPermissionStore(),
                                     metrics=TestEnvironment.get_metrics())

        # What application modules do at import time, before storage exists
        service.register_entity("instrument", ["id", "symbol", "name", "exchange", "currency"])
        service.declare_entitlement(
            "instrument-viewer", "See public instrument fields", "market-data",
            applies_to=["instrument"],
            permissions=["instrument:read:symbol", "instrument:read:name"]
        )
        service.declare_entitlement(
            "instrument-admin", "Full control over instruments", "market-data",
            applies_to=["instrument"],
            permissions=["*"],
            features=["bulk-import"],
            default_feature_scopes=["*"]
        )
        service.account_block("*", "instrument", lambda account: account.username == "suspended")

        await service.start()
        yield service
        await service.stop()

    @pytest.fixture
    def instruments(self):
        return [
            TestDataFactory.create_record(
                "instrument",
                {"id": "INST001", "symbol": "BRN", "name": "Brent Crude Oil", "exchange": "ICE", "currency": "USD"},
                ["desk-oil"]
            ),
            TestDataFactory.create_record(
                "instrument",
                {"id": "INST002", "symbol": "NG", "name": "Henry Hub", "exchange": "NYMEX", "currency": "USD"},
                ["desk-gas"]
            ),
        ]

    @pytest.mark.asyncio
    async def test_type_artifact_generated_on_start(self, service, types_file):
        content = types_file.read_text()

        assert "'instrument-viewer'" in content
        assert "'view-roles'" in content
        assert "'market-data'" in content
        assert "'bulk-import'" in content

    @pytest.mark.asyncio
    async def test_role_scoped_reads(self, service, instruments):
        analysts = await service.create_role("Oil analysts")
        await service.grant_role(analysts.id, "alice")
        await service.grant_role_ruleset(analysts.id, "instrument-viewer", "desk-oil")
        alice = TestDataFactory.create_account("alice")

        visible = await service.filter_batch(alice, instruments, PropertyAction.READ)

        assert visible == [{"symbol": "BRN", "name": "Brent Crude Oil"}, {}]
        assert await service.account_can_do(alice, instruments, "read") == [True, False]
        assert await service.account_can_do(alice, instruments, DataAction.DELETE) == [False, False]

    @pytest.mark.asyncio
    async def test_direct_grants_and_creation(self, service, instruments):
        await service.grant_account_ruleset("bob", "instrument-admin", "desk-gas")
        bob = TestDataFactory.create_account("bob")

        assert await service.account_can_do(bob, instruments, DataAction.ARCHIVE) == [False, True]
        assert await service.can_create(bob, "instrument", ["desk-gas"])
        assert not await service.can_create(bob, "instrument", ["desk-gas", "desk-oil"])
        assert await service.can_do_feature(bob, "bulk-import")

        with pytest.raises(PermissionDeniedError):
            await service.authorize(bob, instruments[0], DataAction.DELETE)

    @pytest.mark.asyncio
    async def test_suspended_account_blocked(self, service, instruments):
        await service.grant_account_ruleset("carol", "instrument-admin", "desk-oil")
        carol = TestDataFactory.create_account("carol")
        suspended = Account(id="carol", username="suspended")

        assert await service.account_can_do(carol, instruments[:1], "read") == [True]
        assert await service.account_can_do(suspended, instruments[:1], "read") == [False]
        assert await service.filter_batch(suspended, instruments[:1]) == [{}]

    @pytest.mark.asyncio
    async def test_stream_pipe_with_subscriber(self, service, instruments):
        role = await service.create_role("Gas desk")
        await service.grant_role(role.id, "dave")
        await service.grant_role_ruleset(role.id, "instrument-viewer", "desk-gas")
        delivered = []

        async def deliver(record, fields):
            delivered.append((record.data["id"], fields))

        pipe = service.filter_pipe(TestDataFactory.create_account("dave"), on_result=deliver)

        await asyncio.gather(*[pipe(record) for record in instruments * 3])

        assert delivered == [("INST002", {"symbol": "NG", "name": "Henry Hub"})] * 3

    @pytest.mark.asyncio
    async def test_admin_bypasses_scoping(self, service, instruments):
        admin = TestDataFactory.create_admin()

        assert await service.filter_batch(admin, instruments) == [r.data for r in instruments]
        assert await service.account_can_do(admin, instruments, DataAction.CLEAR) == [True, True]

    @pytest.mark.asyncio
    async def test_role_preview_and_cleanup(self, service, instruments):
        role = await service.create_role("Preview")
        await service.grant_role_ruleset(role.id, "instrument-admin", "desk-oil")

        assert await service.roles_can_do([role], instruments, "delete") == [True, False]

        await service.delete_role(role.id)

        assert await service.roles_can_do([role], instruments, "delete") == [False, False]

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, service, instruments):
        alice = TestDataFactory.create_account("alice")

        await service.account_can_do(alice, instruments, "read")

        metrics = service.metrics
        assert metrics.sample("authorization_decisions_total",
                              entry_point="account_can_do", outcome="ruleset_deny") == 2.0
        assert metrics.sample("grant_resolutions_total", source="store") == 1.0
        assert metrics.sample("entitlement_registrations_total", mode="queued") == 5.0
