"""
Data models for the permissions engine.
"""

from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

WILDCARD = "*"


class DataAction(str, Enum):
    """Record-level actions; permission checks never look at a property."""
    CREATE = "create"
    DELETE = "delete"
    ARCHIVE = "archive"
    RESTORE_ARCHIVE = "restore-archive"
    RESTORE_VERSION = "restore-version"
    DELETE_VERSION = "delete-version"
    CLEAR = "clear"


class PropertyAction(str, Enum):
    """Field-level actions; reads are filtered property by property."""
    READ = "read"
    UPDATE = "update"
    READ_ARCHIVE = "read-archive"
    READ_VERSION_HISTORY = "read-version-history"
    SET_ATTRIBUTES = "set-attributes"


Action = Union[DataAction, PropertyAction, str]


def action_name(action: Action) -> str:
    """Normalize an action enum member or raw string to its wire value."""
    if isinstance(action, Enum):
        return action.value
    return action


@dataclass(frozen=True)
class PermissionRule:
    """Parsed `entityType:action[:property]` match pattern."""
    entity_type: str
    action: str
    prop: str = WILDCARD


@dataclass(frozen=True)
class Account:
    """Already-authenticated account identity."""
    id: str
    username: str = ""
    is_admin: bool = False


@dataclass
class Record:
    """Generic entity instance as seen by the engine.

    Only the attribute tag set and the field names are ever inspected.
    """
    entity_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    attributes: List[str] = field(default_factory=list)

    @property
    def id(self) -> Optional[str]:
        return self.data.get("id")


@dataclass
class Role:
    """Grouping of rulesets for bulk grant."""
    id: str
    name: str
    description: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class RoleMembership:
    """Account membership in a role."""
    id: str
    role: str
    account: str
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class Entitlement:
    """Persisted entitlement row; permission strings are kept raw."""
    id: str
    name: str
    group: str
    description: str = ""
    applies_to: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    features: List[str] = field(default_factory=list)
    default_feature_scopes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class RoleRuleset:
    """Grants every member of `role` the entitlement on records tagged `target_attribute`."""
    id: str
    role: str
    entitlement: str
    target_attribute: str
    name: str = ""
    description: str = ""
    feature_scopes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class AccountRuleset:
    """Same grant shape as RoleRuleset, bound directly to one account."""
    id: str
    account: str
    entitlement: str
    target_attribute: str
    feature_scopes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)


Ruleset = Union[RoleRuleset, AccountRuleset]
