"""
Permission string grammar.

A permission is either the literal wildcard ``*`` or
``entityType:action[:property]``. Each segment may itself be ``*``. There
is no escaping, so colons inside names are rejected.
"""

from typing import AbstractSet, Iterable, Optional, Tuple

from shared.errors import MalformedPermissionError
from .models import PermissionRule, WILDCARD

MATCH_ALL = PermissionRule(WILDCARD, WILDCARD, WILDCARD)


def parse_permission(raw: str) -> PermissionRule:
    """Parse one permission string, rejecting anything that is not well formed."""
    if not isinstance(raw, str):
        raise MalformedPermissionError(repr(raw), "permission must be a string")
    if raw == WILDCARD:
        return MATCH_ALL

    parts = raw.split(":")
    if len(parts) == 1:
        raise MalformedPermissionError(raw, "expected entityType:action[:property] or *")
    if len(parts) > 3:
        raise MalformedPermissionError(raw, "too many segments; names cannot contain ':'")
    for part in parts:
        if not part:
            raise MalformedPermissionError(raw, "empty segment")
        if part != part.strip() or any(ch.isspace() for ch in part):
            raise MalformedPermissionError(raw, "segments cannot contain whitespace")

    if len(parts) == 2:
        return PermissionRule(parts[0], parts[1], WILDCARD)
    return PermissionRule(parts[0], parts[1], parts[2])


def parse_permissions(raws: Iterable[str]) -> Tuple[PermissionRule, ...]:
    """Parse a list of permission strings; the first malformed one raises."""
    return tuple(parse_permission(raw) for raw in raws)


def format_permission(rule: PermissionRule) -> str:
    """Render a rule back to its textual form."""
    if rule == MATCH_ALL:
        return WILDCARD
    if rule.prop == WILDCARD:
        return f"{rule.entity_type}:{rule.action}"
    return f"{rule.entity_type}:{rule.action}:{rule.prop}"


def rule_matches(
    rule: PermissionRule,
    entity_type: str,
    action: str,
    prop: Optional[str] = None,
    fields: Optional[AbstractSet[str]] = None
) -> bool:
    """Check a rule against an entity type, action and optional property.

    When `prop` is given it must name a field in `fields` (the entity
    type's schema); unknown properties never match, not even ``*``. When
    `prop` is None the property clause is skipped.
    """
    if rule.entity_type != WILDCARD and rule.entity_type != entity_type:
        return False
    if rule.action != WILDCARD and rule.action != action:
        return False
    if prop is None:
        return True
    if not fields or prop not in fields:
        return False
    return rule.prop == WILDCARD or rule.prop == prop
