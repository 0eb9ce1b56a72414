"""
Storage interface consumed by the permissions engine.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from shared.errors import AccessLayerException, StorageError
from shared.logging import get_logger
from ..rules.models import (
    AccountRuleset, Entitlement, Role, RoleMembership, RoleRuleset
)

# Entity type names of the engine's own tables
ROLE = "role"
ROLE_ACCOUNT = "role_account"
ENTITLEMENT = "entitlements"
ROLE_RULESET = "role_rulesets"
ACCOUNT_RULESET = "account_rulesets"

PROTECTED_ENTITY_TYPES = (ROLE, ROLE_ACCOUNT, ENTITLEMENT, ROLE_RULESET, ACCOUNT_RULESET)

ReadyListener = Callable[[], Awaitable[Any]]


@asynccontextmanager
async def storage_operation(operation: str, logger=None):
    """Turn any store failure into an opaque StorageError."""
    try:
        yield
    except AccessLayerException:
        raise
    except Exception as e:
        (logger or get_logger("permissions.storage")).error(
            "Storage operation failed", operation=operation, error=str(e)
        )
        raise StorageError(operation) from e


class PermissionStore(ABC):
    """CRUD for roles, memberships, entitlements and rulesets.

    Subclasses call `_mark_ready(entity_type)` once each table is usable;
    listeners registered through `on_ready` fire exactly once per type.
    """

    def __init__(self):
        self._ready: Set[str] = set()
        self._ready_listeners: Dict[str, List[ReadyListener]] = {}

    def on_ready(self, entity_type: str, listener: ReadyListener):
        """Register a readiness listener for one entity type.

        Readiness fires once; a listener added after it fired is never
        called, so callers check `is_ready` as well.
        """
        if entity_type in self._ready:
            return
        self._ready_listeners.setdefault(entity_type, []).append(listener)

    def is_ready(self, entity_type: str) -> bool:
        return entity_type in self._ready

    async def _mark_ready(self, entity_type: str):
        if entity_type in self._ready:
            return
        self._ready.add(entity_type)
        for listener in self._ready_listeners.pop(entity_type, []):
            await listener()

    @abstractmethod
    async def start(self):
        """Provision storage and fire readiness signals."""

    @abstractmethod
    async def stop(self):
        """Release storage resources."""

    # Roles
    @abstractmethod
    async def save_role(self, role: Role) -> Role: ...

    @abstractmethod
    async def get_role(self, role_id: str) -> Optional[Role]: ...

    @abstractmethod
    async def delete_role(self, role_id: str) -> bool: ...

    @abstractmethod
    async def search_roles(self, key: str, offset: int, limit: int) -> List[Role]: ...

    @abstractmethod
    async def roles_for_account(self, account_id: str) -> List[Role]: ...

    # Memberships
    @abstractmethod
    async def add_membership(self, membership: RoleMembership) -> RoleMembership: ...

    @abstractmethod
    async def get_membership(self, role_id: str, account_id: str) -> Optional[RoleMembership]: ...

    @abstractmethod
    async def delete_membership(self, membership_id: str) -> bool: ...

    @abstractmethod
    async def memberships_for_role(self, role_id: str) -> List[RoleMembership]: ...

    @abstractmethod
    async def delete_memberships(self, role_id: Optional[str] = None,
                                 account_id: Optional[str] = None) -> int: ...

    # Entitlements
    @abstractmethod
    async def get_entitlement(self, name: str) -> Optional[Entitlement]: ...

    @abstractmethod
    async def all_entitlements(self) -> List[Entitlement]: ...

    @abstractmethod
    async def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        """Insert or fully replace the entitlement with this name."""

    # Rulesets
    @abstractmethod
    async def save_role_ruleset(self, ruleset: RoleRuleset) -> RoleRuleset: ...

    @abstractmethod
    async def find_role_ruleset(self, role_id: str, entitlement: str,
                                target_attribute: str) -> Optional[RoleRuleset]: ...

    @abstractmethod
    async def delete_role_ruleset(self, ruleset_id: str) -> bool: ...

    @abstractmethod
    async def delete_role_rulesets(self, role_id: str) -> int: ...

    @abstractmethod
    async def role_rulesets_for_roles(self, role_ids: Sequence[str]) -> List[RoleRuleset]: ...

    @abstractmethod
    async def role_rulesets_for_account(self, account_id: str) -> List[RoleRuleset]:
        """Rulesets of every role the account is a member of."""

    @abstractmethod
    async def save_account_ruleset(self, ruleset: AccountRuleset) -> AccountRuleset: ...

    @abstractmethod
    async def find_account_ruleset(self, account_id: str, entitlement: str,
                                   target_attribute: str) -> Optional[AccountRuleset]: ...

    @abstractmethod
    async def delete_account_ruleset(self, ruleset_id: str) -> bool: ...

    @abstractmethod
    async def delete_account_rulesets(self, account_id: str) -> int: ...

    @abstractmethod
    async def account_rulesets_for_account(self, account_id: str) -> List[AccountRuleset]: ...

    # Cascades
    async def delete_role_cascade(self, role_id: str) -> bool:
        """Delete a role with its role rulesets and memberships."""
        await self.delete_role_rulesets(role_id)
        await self.delete_memberships(role_id=role_id)
        return await self.delete_role(role_id)

    async def delete_account_cascade(self, account_id: str) -> Tuple[int, int]:
        """Delete an account's memberships and direct rulesets; returns both counts."""
        memberships = await self.delete_memberships(account_id=account_id)
        rulesets = await self.delete_account_rulesets(account_id)
        return memberships, rulesets
