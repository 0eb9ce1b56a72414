"""
Registry of entity types and the field names of their schemas.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional

from shared.errors import UnknownEntityTypeError, ValidationError
from shared.logging import get_logger


@dataclass(frozen=True)
class EntitySchema:
    """Name and field set of one entity type."""
    name: str
    fields: FrozenSet[str]


class EntityRegistry:
    """Entity types known to the engine."""

    def __init__(self):
        self.logger = get_logger("permissions.entities")
        self._schemas: Dict[str, EntitySchema] = {}

    def register(self, name: str, fields: Iterable[str]) -> EntitySchema:
        """Register (or replace) an entity type's schema."""
        if not name or ":" in name:
            raise ValidationError(f"Invalid entity type name: {name!r}", {"entity_type": name})
        schema = EntitySchema(name=name, fields=frozenset(fields))
        self._schemas[name] = schema
        self.logger.debug("Entity type registered", entity_type=name, fields=sorted(schema.fields))
        return schema

    def get(self, name: str) -> Optional[EntitySchema]:
        return self._schemas.get(name)

    def require(self, name: str) -> EntitySchema:
        schema = self._schemas.get(name)
        if schema is None:
            raise UnknownEntityTypeError(name)
        return schema

    def has(self, name: str) -> bool:
        return name in self._schemas

    def fields(self, name: str) -> FrozenSet[str]:
        """Field names of a registered entity type; empty when unknown."""
        schema = self._schemas.get(name)
        return schema.fields if schema else frozenset()

    def names(self) -> List[str]:
        return sorted(self._schemas)
