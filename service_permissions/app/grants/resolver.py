"""
Role/membership resolution: from an account to its effective grants.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from shared.errors import MalformedPermissionError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, measure_time
from ..cache.redis_cache import CachedRulesets, RedisGrantCache
from ..catalog.permissions import EntitlementPermission
from ..rules.models import Account, Entitlement, Record, Role, Ruleset
from ..storage.base import PermissionStore, storage_operation


@dataclass(frozen=True)
class Grant:
    """A ruleset joined with its resolved entitlement."""
    ruleset: Ruleset
    permission: EntitlementPermission

    @property
    def target_attribute(self) -> str:
        return self.ruleset.target_attribute

    def covers(self, attributes: Iterable[str]) -> bool:
        return self.ruleset.target_attribute in attributes


@dataclass(frozen=True)
class GrantSnapshot:
    """Immutable grant set resolved once and shared across a batch or stream."""
    subject: str
    grants: Tuple[Grant, ...] = ()

    def __len__(self) -> int:
        return len(self.grants)

    def __bool__(self) -> bool:
        return bool(self.grants)

    def can_do(self, record: Record, action: str) -> bool:
        """Whether any grant allows `action` on this record as a whole."""
        return any(can_do_one(g.permission, g.target_attribute, record, action) for g in self.grants)

    def applicable(self, record: Record, action: str) -> Tuple[Grant, ...]:
        """Grants scoped to this record that allow `action` on its entity type."""
        attributes = set(record.attributes)
        return tuple(
            g for g in self.grants
            if g.target_attribute in attributes and g.permission.test(record.entity_type, action)
        )

    def creatable_targets(self, entity_type: str) -> FrozenSet[str]:
        """Target attributes under which `entity_type` records may be created."""
        return frozenset(
            g.target_attribute for g in self.grants
            if g.permission.can_grant_create(entity_type)
        )

    def grants_feature(self, feature: str, scope: Optional[str] = None) -> bool:
        return any(g.permission.grants_feature(feature, scope) for g in self.grants)


def can_do_one(permission: EntitlementPermission, target_attribute: str, record: Record, action: str) -> bool:
    """A single ruleset's verdict on a record for a record-level action."""
    if target_attribute not in record.attributes:
        return False
    return permission.test(record.entity_type, action)


class GrantResolver:
    """Maps accounts and roles to grant snapshots.

    Resolution is the expensive join; callers resolve once per batch or
    stream and pass the snapshot around.
    """

    def __init__(
        self,
        store: PermissionStore,
        cache: Optional[RedisGrantCache] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.logger = get_logger("permissions.grants")
        self.store = store
        self.cache = cache
        self.metrics = metrics

    async def roles_of(self, account: Union[Account, str]) -> List[Role]:
        """Every role reachable through the account's memberships."""
        account_id = _account_id(account)
        async with storage_operation("roles_for_account", self.logger):
            return await self.store.roles_for_account(account_id)

    @measure_time("grant_resolution_duration_seconds")
    async def rulesets_of(self, account: Union[Account, str]) -> GrantSnapshot:
        """Role rulesets of the account's roles plus its direct rulesets."""
        return await self._resolve_account(_account_id(account))

    async def rulesets_of_roles(self, roles: Sequence[Union[Role, str]]) -> GrantSnapshot:
        """Union of the given roles' rulesets, without any account."""
        role_ids = [r.id if isinstance(r, Role) else r for r in roles]
        async with storage_operation("role_rulesets_for_roles", self.logger):
            rulesets, index = await asyncio.gather(
                self.store.role_rulesets_for_roles(role_ids),
                self._entitlement_index()
            )
        self._record("store")
        return self._join("roles:" + ",".join(sorted(role_ids)), rulesets, index)

    async def _resolve_account(self, account_id: str) -> GrantSnapshot:
        cached = None
        if self.cache is not None:
            cached = await self.cache.get_rulesets(account_id)

        if cached is None:
            async with storage_operation("rulesets_for_account", self.logger):
                role_rulesets, account_rulesets = await asyncio.gather(
                    self.store.role_rulesets_for_account(account_id),
                    self.store.account_rulesets_for_account(account_id)
                )
            cached = CachedRulesets(role_rulesets=role_rulesets, account_rulesets=account_rulesets)
            if self.cache is not None:
                await self.cache.set_rulesets(account_id, cached)
            self._record("store")
        else:
            self._record("cache")

        rulesets: List[Ruleset] = [*cached.role_rulesets, *cached.account_rulesets]
        if not rulesets:
            return GrantSnapshot(subject=account_id)

        index = await self._entitlement_index()
        return self._join(account_id, rulesets, index)

    async def _entitlement_index(self) -> Dict[str, EntitlementPermission]:
        entitlements = None
        if self.cache is not None:
            entitlements = await self.cache.get_entitlements()
        if entitlements is None:
            async with storage_operation("all_entitlements", self.logger):
                entitlements = await self.store.all_entitlements()
            if self.cache is not None:
                await self.cache.set_entitlements(entitlements)
        return self._parse(entitlements)

    def _parse(self, entitlements: List[Entitlement]) -> Dict[str, EntitlementPermission]:
        index: Dict[str, EntitlementPermission] = {}
        for entitlement in entitlements:
            try:
                index[entitlement.name] = EntitlementPermission.from_entitlement(entitlement)
            except MalformedPermissionError as e:
                # Stored rows bypassed registration; such an entitlement grants nothing
                self.logger.warning("Ignoring entitlement with malformed rules",
                                    entitlement=entitlement.name, error=e.message)
        return index

    def _join(self, subject: str, rulesets: Iterable[Ruleset],
              index: Dict[str, EntitlementPermission]) -> GrantSnapshot:
        grants = []
        for ruleset in rulesets:
            permission = index.get(ruleset.entitlement)
            if permission is None:
                self.logger.warning("Ruleset references missing entitlement",
                                    ruleset_id=ruleset.id, entitlement=ruleset.entitlement)
                continue
            grants.append(Grant(ruleset=ruleset, permission=permission))
        return GrantSnapshot(subject=subject, grants=tuple(grants))

    def _record(self, source: str):
        if self.metrics is not None:
            self.metrics.record_resolution(source)


def _account_id(account: Union[Account, str]) -> str:
    return account.id if isinstance(account, Account) else account
