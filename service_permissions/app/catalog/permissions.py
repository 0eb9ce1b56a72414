"""
Parsed view of an entitlement used by every evaluator entry point.
"""

from dataclasses import dataclass, field
from typing import AbstractSet, FrozenSet, Optional, Tuple

from ..rules.grammar import parse_permissions, rule_matches
from ..rules.models import DataAction, Entitlement, PermissionRule, WILDCARD


@dataclass(frozen=True)
class EntitlementPermission:
    """An entitlement with its permission strings parsed into rules.

    An entitlement holding any rule whose entity type is ``*`` grants
    everything it applies to; entity type and action comparison is skipped
    for it. An entitlement with no rules at all grants nothing.
    """
    name: str
    group: str
    entity_types: FrozenSet[str]
    rules: Tuple[PermissionRule, ...]
    features: FrozenSet[str] = field(default_factory=frozenset)
    default_feature_scopes: FrozenSet[str] = field(default_factory=frozenset)
    permissive: bool = field(init=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "permissive", any(rule.entity_type == WILDCARD for rule in self.rules))

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement) -> "EntitlementPermission":
        """Parse a persisted entitlement; raises MalformedPermissionError."""
        return cls(
            name=entitlement.name,
            group=entitlement.group,
            entity_types=frozenset(entitlement.applies_to),
            rules=parse_permissions(entitlement.permissions),
            features=frozenset(entitlement.features),
            default_feature_scopes=frozenset(entitlement.default_feature_scopes)
        )

    def applies_to(self, entity_type: str) -> bool:
        return not self.entity_types or entity_type in self.entity_types

    def can_grant_create(self, entity_type: str) -> bool:
        """Whether this entitlement allows creating records of `entity_type`."""
        return self.test(entity_type, DataAction.CREATE.value)

    def test(
        self,
        entity_type: str,
        action: str,
        prop: Optional[str] = None,
        fields: Optional[AbstractSet[str]] = None
    ) -> bool:
        """Whether this entitlement allows `action` (on `prop`) for `entity_type`."""
        if not self.applies_to(entity_type):
            return False
        if self.permissive:
            return prop is None or (fields is not None and prop in fields)
        return any(
            rule_matches(rule, entity_type, action, prop, fields)
            for rule in self.rules
        )

    def grants_feature(self, feature: str, scope: Optional[str] = None) -> bool:
        if feature not in self.features:
            return False
        if WILDCARD in self.default_feature_scopes:
            return True
        return scope is not None and scope in self.default_feature_scopes
