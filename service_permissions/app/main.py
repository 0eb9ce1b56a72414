"""
Permissions engine for the Access Layer.
"""

import uuid
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from shared.config import PermissionsConfig, get_config
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector

from .cache.redis_cache import RedisGrantCache
from .catalog.artifact import EntitlementTypesWriter
from .catalog.catalog import EntitlementCatalog
from .evaluator.authorization import AuthorizationEvaluator
from .evaluator.filters import FilterPipe, PropertyFilter, ResultCallback
from .evaluator.pipeline import DecisionPipeline
from .grants.resolver import GrantResolver
from .overrides.registry import OverrideRegistry, Predicate
from .rules.entities import EntityRegistry, EntitySchema
from .rules.models import (
    Account, AccountRuleset, Action, DataAction, Entitlement, PropertyAction,
    Record, Role, RoleMembership, RoleRuleset
)
from .storage.base import (
    ACCOUNT_RULESET, ENTITLEMENT, ROLE, ROLE_ACCOUNT, ROLE_RULESET,
    PermissionStore, storage_operation
)
from .storage.postgres import PostgreSQLPermissionStore

# Generic-API actions that may never touch the engine's own tables
PROTECTED_ACTIONS = (
    DataAction.CREATE,
    PropertyAction.UPDATE,
    DataAction.DELETE,
    DataAction.ARCHIVE,
    DataAction.RESTORE_ARCHIVE,
    DataAction.DELETE_VERSION,
    DataAction.RESTORE_VERSION,
)

PROTECTED_SCHEMAS = {
    ROLE: Role,
    ROLE_ACCOUNT: RoleMembership,
    ENTITLEMENT: Entitlement,
    ROLE_RULESET: RoleRuleset,
    ACCOUNT_RULESET: AccountRuleset,
}

ROLES_GROUP = "roles"


class PermissionsService:
    """Wires the engine together and exposes the evaluation and admin APIs."""

    def __init__(
        self,
        config: Optional[PermissionsConfig] = None,
        store: Optional[PermissionStore] = None,
        cache: Optional[RedisGrantCache] = None,
        is_admin: Optional[Predicate] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config or get_config()
        configure_logging(self.config.service_name, self.config.log_level)
        self.logger = get_logger("permissions.service")
        self.metrics = metrics or get_metrics_collector(self.config.service_name)

        self.store = store or PostgreSQLPermissionStore(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool,
            max_size=self.config.postgres_max_pool
        )
        if cache is None and self.config.enable_grant_cache:
            cache = RedisGrantCache(
                self.config.redis_url,
                ruleset_ttl=self.config.grant_cache_ttl_seconds,
                entitlement_ttl=self.config.entitlement_cache_ttl_seconds
            )
        self.cache = cache

        # Components
        self.entities = EntityRegistry()
        self.overrides = OverrideRegistry()
        self.catalog = EntitlementCatalog(
            self.store,
            writer=EntitlementTypesWriter(self.config.entitlement_types_file),
            metrics=self.metrics
        )
        self.resolver = GrantResolver(self.store, self.cache, self.metrics)
        self.pipeline = DecisionPipeline(self.overrides, is_admin, self.metrics)
        self.evaluator = AuthorizationEvaluator(self.resolver, self.pipeline)
        self.filter = PropertyFilter(self.resolver, self.pipeline, self.entities)

        self.catalog.on_change(self._on_entitlement_change)
        self.store.on_ready(ENTITLEMENT, self.catalog.ready)

        self._protect_own_tables()
        self._declare_builtin_entitlements()

    def _protect_own_tables(self):
        """Roles, memberships, entitlements and rulesets change only through this service."""
        for entity_type, model in PROTECTED_SCHEMAS.items():
            self.entities.register(entity_type, [f.name for f in dataclass_fields(model)])
            for action in PROTECTED_ACTIONS:
                self.overrides.block(action, entity_type)

    def _declare_builtin_entitlements(self):
        self.catalog.declare(
            "view-roles",
            "View role names and descriptions",
            ROLES_GROUP,
            applies_to=[ROLE],
            permissions=["role:read:name", "role:read:description"]
        )
        self.catalog.declare(
            "manage-roles",
            "Create roles and manage their rulesets",
            ROLES_GROUP,
            applies_to=[ROLE],
            permissions=["role:create", "role:read:name", "role:read:description"],
            features=["manage-roles"]
        )
        self.catalog.declare(
            "manage-members",
            "Add and remove role members",
            ROLES_GROUP
        )

    async def start(self):
        """Start storage and the optional grant cache; storage readiness flushes the catalog."""
        if self.cache is not None:
            await self.cache.start()
        if self.store.is_ready(ENTITLEMENT):
            # Store was provisioned elsewhere before this service subscribed
            await self.catalog.ready()
        else:
            await self.store.start()
        self.logger.info("Permissions service started",
                         entity_types=self.entities.names(),
                         grant_cache=self.cache is not None)

    async def stop(self):
        await self.store.stop()
        if self.cache is not None:
            await self.cache.stop()
        self.logger.info("Permissions service stopped")

    async def health_check(self) -> Dict[str, Any]:
        """Report component health."""
        health: Dict[str, Any] = {
            "service": self.config.service_name,
            "catalog": self.catalog.initializer.state.value,
        }
        store_check = getattr(self.store, "health_check", None)
        if store_check is not None:
            health["store"] = "ok" if await store_check() else "unavailable"
        if self.cache is not None:
            health["cache"] = "ok" if await self.cache.health_check() else "unavailable"
            health["cache_stats"] = self.cache.get_stats()
        return health

    # Registration

    def register_entity(self, name: str, fields: Iterable[str]) -> EntitySchema:
        return self.entities.register(name, fields)

    def declare_entitlement(self, name: str, description: str, group: str,
                            applies_to: Iterable[str] = (), permissions: Iterable[str] = (),
                            features: Iterable[str] = (),
                            default_feature_scopes: Iterable[str] = ()) -> Entitlement:
        """Declare an entitlement at import time, before the service starts."""
        return self.catalog.declare(name, description, group, applies_to, permissions,
                                    features, default_feature_scopes)

    async def register_entitlement(self, name: str, description: str, group: str,
                                   applies_to: Iterable[str] = (), permissions: Iterable[str] = (),
                                   features: Iterable[str] = (),
                                   default_feature_scopes: Iterable[str] = ()) -> Entitlement:
        return await self.catalog.register(name, description, group, applies_to, permissions,
                                           features, default_feature_scopes)

    def block(self, action: Action, entity_type: str, predicate: Optional[Predicate] = None):
        return self.overrides.block(action, entity_type, predicate)

    def account_block(self, action: Action, entity_type: str, predicate: Predicate):
        return self.overrides.account_block(action, entity_type, predicate)

    def bypass(self, action: Action, entity_type: str, predicate: Optional[Predicate] = None):
        return self.overrides.bypass(action, entity_type, predicate)

    def account_bypass(self, action: Action, entity_type: str, predicate: Predicate):
        return self.overrides.account_bypass(action, entity_type, predicate)

    # Evaluation

    async def can_create(self, account: Account, entity_type: str, attributes: Iterable[str]) -> bool:
        return await self.evaluator.can_create(account, entity_type, attributes)

    async def account_can_do(self, account: Account, records: Sequence[Record], action: Action) -> List[bool]:
        return await self.evaluator.account_can_do(account, records, action)

    async def roles_can_do(self, roles: Sequence[Union[Role, str]], records: Sequence[Record],
                           action: Action) -> List[bool]:
        return await self.evaluator.roles_can_do(roles, records, action)

    async def can_do_feature(self, account: Account, feature: str, scope: Optional[str] = None) -> bool:
        return await self.evaluator.can_do_feature(account, feature, scope)

    async def authorize(self, account: Account, record: Record, action: Action):
        await self.evaluator.authorize(account, record, action)

    async def filter_batch(self, account: Account, records: Sequence[Record],
                           action: Action = PropertyAction.READ) -> List[Dict[str, Any]]:
        return await self.filter.filter_batch(account, records, action)

    def filter_pipe(self, account: Account, action: Action = PropertyAction.READ,
                    on_result: Optional[ResultCallback] = None) -> FilterPipe:
        return self.filter.filter_pipe(account, action, on_result)

    # Roles

    async def create_role(self, name: str, description: str = "") -> Role:
        if not name:
            raise ValidationError("Role name is required")
        role = Role(id=str(uuid.uuid4()), name=name, description=description)
        async with storage_operation("save_role", self.logger):
            await self.store.save_role(role)
        self.logger.info("Role created", role_id=role.id, name=name)
        return role

    async def update_role(self, role_id: str, name: Optional[str] = None,
                          description: Optional[str] = None) -> Role:
        role = await self._require_role(role_id)
        if name is not None:
            if not name:
                raise ValidationError("Role name is required")
            role.name = name
        if description is not None:
            role.description = description
        role.updated_at = datetime.now()
        async with storage_operation("save_role", self.logger):
            await self.store.save_role(role)
        self.logger.info("Role updated", role_id=role_id)
        return role

    async def delete_role(self, role_id: str):
        """Delete a role with its memberships and role rulesets."""
        await self._require_role(role_id)
        async with storage_operation("delete_role", self.logger):
            members = await self._members(role_id)
            await self.store.delete_role_cascade(role_id)
        await self._invalidate(members)
        self.logger.info("Role deleted", role_id=role_id, members=len(members))

    async def search_roles(self, key: str = "", offset: int = 0, limit: int = 50) -> List[Role]:
        async with storage_operation("search_roles", self.logger):
            return await self.store.search_roles(key, offset, limit)

    async def get_role(self, role_id: str) -> Optional[Role]:
        async with storage_operation("get_role", self.logger):
            return await self.store.get_role(role_id)

    # Memberships

    async def grant_role(self, role_id: str, account_id: str) -> RoleMembership:
        """Add an account to a role; granting an existing membership returns it."""
        await self._require_role(role_id)
        async with storage_operation("add_membership", self.logger):
            existing = await self.store.get_membership(role_id, account_id)
            if existing is not None:
                return existing
            membership = RoleMembership(id=str(uuid.uuid4()), role=role_id, account=account_id)
            await self.store.add_membership(membership)
        await self._invalidate([account_id])
        self.logger.info("Role granted", role_id=role_id, account_id=account_id)
        return membership

    async def revoke_role(self, role_id: str, account_id: str):
        async with storage_operation("delete_membership", self.logger):
            membership = await self.store.get_membership(role_id, account_id)
            if membership is None:
                raise NotFoundError(
                    f"Account {account_id} is not a member of role {role_id}",
                    {"role_id": role_id, "account_id": account_id}
                )
            await self.store.delete_membership(membership.id)
        await self._invalidate([account_id])
        self.logger.info("Role revoked", role_id=role_id, account_id=account_id)

    async def is_in_role(self, account_id: str, role_id: str) -> bool:
        async with storage_operation("get_membership", self.logger):
            return await self.store.get_membership(role_id, account_id) is not None

    async def accounts_in_role(self, role_id: str) -> List[str]:
        async with storage_operation("memberships_for_role", self.logger):
            return await self._members(role_id)

    async def roles_of(self, account: Union[Account, str]) -> List[Role]:
        return await self.resolver.roles_of(account)

    # Rulesets

    async def grant_role_ruleset(self, role_id: str, entitlement: str, target_attribute: str,
                                 name: str = "", description: str = "",
                                 feature_scopes: Iterable[str] = ()) -> RoleRuleset:
        await self._require_role(role_id)
        await self._require_entitlement(entitlement)
        async with storage_operation("save_role_ruleset", self.logger):
            if await self.store.find_role_ruleset(role_id, entitlement, target_attribute) is not None:
                raise ConflictError(
                    "Role already holds this entitlement for this target",
                    {"role_id": role_id, "entitlement": entitlement, "target_attribute": target_attribute}
                )
            ruleset = RoleRuleset(
                id=str(uuid.uuid4()),
                role=role_id,
                entitlement=entitlement,
                target_attribute=target_attribute,
                name=name,
                description=description,
                feature_scopes=list(feature_scopes)
            )
            await self.store.save_role_ruleset(ruleset)
            members = await self._members(role_id)
        await self._invalidate(members)
        self.logger.info("Role ruleset granted", role_id=role_id, entitlement=entitlement,
                         target_attribute=target_attribute)
        return ruleset

    async def revoke_role_ruleset(self, role_id: str, entitlement: str, target_attribute: str):
        async with storage_operation("delete_role_ruleset", self.logger):
            ruleset = await self.store.find_role_ruleset(role_id, entitlement, target_attribute)
            if ruleset is None:
                raise NotFoundError(
                    "Role ruleset not found",
                    {"role_id": role_id, "entitlement": entitlement, "target_attribute": target_attribute}
                )
            await self.store.delete_role_ruleset(ruleset.id)
            members = await self._members(role_id)
        await self._invalidate(members)
        self.logger.info("Role ruleset revoked", role_id=role_id, entitlement=entitlement,
                         target_attribute=target_attribute)

    async def grant_account_ruleset(self, account_id: str, entitlement: str, target_attribute: str,
                                    feature_scopes: Iterable[str] = ()) -> AccountRuleset:
        await self._require_entitlement(entitlement)
        async with storage_operation("save_account_ruleset", self.logger):
            if await self.store.find_account_ruleset(account_id, entitlement, target_attribute) is not None:
                raise ConflictError(
                    "Account already holds this entitlement for this target",
                    {"account_id": account_id, "entitlement": entitlement, "target_attribute": target_attribute}
                )
            ruleset = AccountRuleset(
                id=str(uuid.uuid4()),
                account=account_id,
                entitlement=entitlement,
                target_attribute=target_attribute,
                feature_scopes=list(feature_scopes)
            )
            await self.store.save_account_ruleset(ruleset)
        await self._invalidate([account_id])
        self.logger.info("Account ruleset granted", account_id=account_id, entitlement=entitlement,
                         target_attribute=target_attribute)
        return ruleset

    async def revoke_account_ruleset(self, account_id: str, entitlement: str, target_attribute: str):
        async with storage_operation("delete_account_ruleset", self.logger):
            ruleset = await self.store.find_account_ruleset(account_id, entitlement, target_attribute)
            if ruleset is None:
                raise NotFoundError(
                    "Account ruleset not found",
                    {"account_id": account_id, "entitlement": entitlement, "target_attribute": target_attribute}
                )
            await self.store.delete_account_ruleset(ruleset.id)
        await self._invalidate([account_id])
        self.logger.info("Account ruleset revoked", account_id=account_id, entitlement=entitlement,
                         target_attribute=target_attribute)

    async def delete_account(self, account_id: str):
        """Remove every membership and direct ruleset of a deleted account."""
        async with storage_operation("delete_account", self.logger):
            memberships, rulesets = await self.store.delete_account_cascade(account_id)
        await self._invalidate([account_id])
        self.logger.info("Account grants removed", account_id=account_id,
                         memberships=memberships, rulesets=rulesets)

    # Helpers

    async def _require_role(self, role_id: str) -> Role:
        role = await self.get_role(role_id)
        if role is None:
            raise NotFoundError(f"Role {role_id} not found", {"role_id": role_id})
        return role

    async def _require_entitlement(self, name: str) -> Entitlement:
        entitlement = await self.catalog.get(name)
        if entitlement is None:
            raise NotFoundError(f"Entitlement {name} not found", {"entitlement": name})
        return entitlement

    async def _members(self, role_id: str) -> List[str]:
        return [m.account for m in await self.store.memberships_for_role(role_id)]

    async def _invalidate(self, account_ids: Iterable[str]):
        if self.cache is None:
            return
        for account_id in set(account_ids):
            await self.cache.invalidate_account(account_id)

    async def _on_entitlement_change(self, name: str):
        if self.cache is not None:
            await self.cache.invalidate_entitlements()


def create_service(config: Optional[PermissionsConfig] = None, **kwargs) -> PermissionsService:
    """Create a permissions service from configuration."""
    return PermissionsService(config=config, **kwargs)
