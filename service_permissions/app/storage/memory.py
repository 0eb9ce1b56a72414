"""
In-process permission store, used by tests and embedded deployments.
"""

import copy
from typing import Dict, List, Optional, Sequence

from shared.logging import get_logger
from ..rules.models import (
    AccountRuleset, Entitlement, Role, RoleMembership, RoleRuleset
)
from .base import PermissionStore, PROTECTED_ENTITY_TYPES


class InMemoryPermissionStore(PermissionStore):
    """Dictionary-backed store. Rows are copied in and out."""

    def __init__(self):
        super().__init__()
        self.logger = get_logger("permissions.storage.memory")
        self.roles: Dict[str, Role] = {}
        self.memberships: Dict[str, RoleMembership] = {}
        self.entitlements: Dict[str, Entitlement] = {}
        self.role_rulesets: Dict[str, RoleRuleset] = {}
        self.account_rulesets: Dict[str, AccountRuleset] = {}

    async def start(self):
        for entity_type in PROTECTED_ENTITY_TYPES:
            await self._mark_ready(entity_type)
        self.logger.info("In-memory permission store started")

    async def stop(self):
        self.logger.info("In-memory permission store stopped")

    # Roles
    async def save_role(self, role: Role) -> Role:
        self.roles[role.id] = copy.deepcopy(role)
        return role

    async def get_role(self, role_id: str) -> Optional[Role]:
        return copy.deepcopy(self.roles.get(role_id))

    async def delete_role(self, role_id: str) -> bool:
        return self.roles.pop(role_id, None) is not None

    async def search_roles(self, key: str, offset: int, limit: int) -> List[Role]:
        key = key.lower()
        matches = sorted(
            (r for r in self.roles.values() if key in r.name.lower()),
            key=lambda r: r.name
        )
        return [copy.deepcopy(r) for r in matches[offset:offset + limit]]

    async def roles_for_account(self, account_id: str) -> List[Role]:
        role_ids = [m.role for m in self.memberships.values() if m.account == account_id]
        return [copy.deepcopy(self.roles[r]) for r in role_ids if r in self.roles]

    # Memberships
    async def add_membership(self, membership: RoleMembership) -> RoleMembership:
        self.memberships[membership.id] = copy.deepcopy(membership)
        return membership

    async def get_membership(self, role_id: str, account_id: str) -> Optional[RoleMembership]:
        for m in self.memberships.values():
            if m.role == role_id and m.account == account_id:
                return copy.deepcopy(m)
        return None

    async def delete_membership(self, membership_id: str) -> bool:
        return self.memberships.pop(membership_id, None) is not None

    async def memberships_for_role(self, role_id: str) -> List[RoleMembership]:
        return [copy.deepcopy(m) for m in self.memberships.values() if m.role == role_id]

    async def delete_memberships(self, role_id: Optional[str] = None,
                                 account_id: Optional[str] = None) -> int:
        doomed = [
            m.id for m in self.memberships.values()
            if (role_id is None or m.role == role_id)
            and (account_id is None or m.account == account_id)
        ]
        for membership_id in doomed:
            del self.memberships[membership_id]
        return len(doomed)

    # Entitlements
    async def get_entitlement(self, name: str) -> Optional[Entitlement]:
        return copy.deepcopy(self.entitlements.get(name))

    async def all_entitlements(self) -> List[Entitlement]:
        return [copy.deepcopy(e) for e in self.entitlements.values()]

    async def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        # Whole-row replacement keyed by name
        self.entitlements[entitlement.name] = copy.deepcopy(entitlement)
        return entitlement

    # Rulesets
    async def save_role_ruleset(self, ruleset: RoleRuleset) -> RoleRuleset:
        self.role_rulesets[ruleset.id] = copy.deepcopy(ruleset)
        return ruleset

    async def find_role_ruleset(self, role_id: str, entitlement: str,
                                target_attribute: str) -> Optional[RoleRuleset]:
        for rs in self.role_rulesets.values():
            if (rs.role, rs.entitlement, rs.target_attribute) == (role_id, entitlement, target_attribute):
                return copy.deepcopy(rs)
        return None

    async def delete_role_ruleset(self, ruleset_id: str) -> bool:
        return self.role_rulesets.pop(ruleset_id, None) is not None

    async def delete_role_rulesets(self, role_id: str) -> int:
        doomed = [rs.id for rs in self.role_rulesets.values() if rs.role == role_id]
        for ruleset_id in doomed:
            del self.role_rulesets[ruleset_id]
        return len(doomed)

    async def role_rulesets_for_roles(self, role_ids: Sequence[str]) -> List[RoleRuleset]:
        wanted = set(role_ids)
        return [copy.deepcopy(rs) for rs in self.role_rulesets.values() if rs.role in wanted]

    async def role_rulesets_for_account(self, account_id: str) -> List[RoleRuleset]:
        role_ids = {
            m.role for m in self.memberships.values()
            if m.account == account_id and m.role in self.roles
        }
        return await self.role_rulesets_for_roles(list(role_ids))

    async def save_account_ruleset(self, ruleset: AccountRuleset) -> AccountRuleset:
        self.account_rulesets[ruleset.id] = copy.deepcopy(ruleset)
        return ruleset

    async def find_account_ruleset(self, account_id: str, entitlement: str,
                                   target_attribute: str) -> Optional[AccountRuleset]:
        for rs in self.account_rulesets.values():
            if (rs.account, rs.entitlement, rs.target_attribute) == (account_id, entitlement, target_attribute):
                return copy.deepcopy(rs)
        return None

    async def delete_account_ruleset(self, ruleset_id: str) -> bool:
        return self.account_rulesets.pop(ruleset_id, None) is not None

    async def delete_account_rulesets(self, account_id: str) -> int:
        doomed = [rs.id for rs in self.account_rulesets.values() if rs.account == account_id]
        for ruleset_id in doomed:
            del self.account_rulesets[ruleset_id]
        return len(doomed)

    async def account_rulesets_for_account(self, account_id: str) -> List[AccountRuleset]:
        return [copy.deepcopy(rs) for rs in self.account_rulesets.values() if rs.account == account_id]
