"""
Test helper functions and factory methods for the permissions engine.
"""

import uuid
from typing import Any, Dict, Iterable, List, Optional

from shared.config import PermissionsConfig
from shared.metrics import MetricsCollector
from service_permissions.app.main import PermissionsService
from service_permissions.app.rules.models import Account, Record
from service_permissions.app.storage.memory import InMemoryPermissionStore


class TestDataFactory:
    """Factory for creating test data."""

    __test__ = False

    @staticmethod
    def create_account(account_id: Optional[str] = None, is_admin: bool = False) -> Account:
        """Create an account; ids are random unless given."""
        account_id = account_id or f"acct-{uuid.uuid4().hex[:8]}"
        return Account(id=account_id, username=account_id, is_admin=is_admin)

    @staticmethod
    def create_admin(account_id: str = "admin") -> Account:
        return TestDataFactory.create_account(account_id, is_admin=True)

    @staticmethod
    def create_record(entity_type: str, data: Dict[str, Any], attributes: Iterable[str] = ()) -> Record:
        return Record(entity_type=entity_type, data=dict(data), attributes=list(attributes))

    @staticmethod
    def create_role_record(name: str = "Admins", description: str = "Administrators",
                           attributes: Iterable[str] = ("t1",)):
        """A `role` row as the generic API would hand it to the engine."""
        return TestDataFactory.create_record(
            "role",
            {"id": str(uuid.uuid4()), "name": name, "description": description},
            attributes
        )

    @staticmethod
    def create_test_entities() -> Dict[str, List[str]]:
        """Entity types used across tests, with their field names."""
        return {
            "testEntity": ["id", "name", "age", "email"],
            "instrument": ["id", "symbol", "name", "exchange", "currency"],
            "curve": ["id", "name", "points", "commodity"],
        }

    @staticmethod
    def create_test_entitlements() -> List[Dict[str, Any]]:
        """Entitlement definitions used across tests."""
        return [
            {
                "name": "read-age",
                "description": "Read the age of test entities",
                "group": "tests",
                "applies_to": ["testEntity"],
                "permissions": ["testEntity:read:age"],
            },
            {
                "name": "create-test-entity",
                "description": "Create test entities",
                "group": "tests",
                "applies_to": ["testEntity"],
                "permissions": ["testEntity:create"],
            },
            {
                "name": "everything",
                "description": "Coarse grant of everything it applies to",
                "group": "tests",
                "permissions": ["*"],
            },
            {
                "name": "nothing",
                "description": "Declared without rules",
                "group": "tests",
                "applies_to": ["testEntity"],
                "permissions": [],
            },
            {
                "name": "curve-analyst",
                "description": "Read curves and export them",
                "group": "analytics",
                "applies_to": ["curve"],
                "permissions": ["curve:read", "curve:delete"],
                "features": ["export"],
                "default_feature_scopes": ["*"],
            },
        ]


class TestEnvironment:
    """Test environment configuration."""

    __test__ = False

    @staticmethod
    def get_test_config(**overrides) -> PermissionsConfig:
        """Configuration that never reaches a real database or Redis."""
        values = {
            "env": "test",
            "log_level": "warning",
            "enable_grant_cache": False,
            "entitlement_types_file": None,
        }
        values.update(overrides)
        return PermissionsConfig(**values)

    @staticmethod
    def get_metrics() -> MetricsCollector:
        return MetricsCollector("permissions-test")


async def create_test_service(register_entities: bool = True, **kwargs) -> PermissionsService:
    """Build and start a service backed by the in-memory store."""
    kwargs.setdefault("store", InMemoryPermissionStore())
    kwargs.setdefault("metrics", TestEnvironment.get_metrics())
    service = PermissionsService(config=kwargs.pop("config", TestEnvironment.get_test_config()), **kwargs)
    if register_entities:
        for name, fields in TestDataFactory.create_test_entities().items():
            service.register_entity(name, fields)
        for definition in TestDataFactory.create_test_entitlements():
            service.declare_entitlement(**definition)
    await service.start()
    return service
