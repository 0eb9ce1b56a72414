"""
Entitlement catalog: named, reusable capability descriptors.
"""

import asyncio
import re
import uuid
from functools import partial
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from shared.errors import InvalidEntitlementNameError, StorageError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.grammar import parse_permissions
from ..rules.models import Entitlement, WILDCARD
from ..storage.base import PermissionStore, storage_operation
from .artifact import EntitlementTypesWriter
from .initializer import CatalogInitializer
from .permissions import EntitlementPermission

NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")

ChangeListener = Callable[[str], Awaitable[None]]


class EntitlementCatalog:
    """Declares, persists and looks up entitlements.

    Declarations are usually made at import time, before storage exists;
    they are validated immediately and queued on the initializer until the
    entitlement store signals readiness.
    """

    def __init__(
        self,
        store: PermissionStore,
        writer: Optional[EntitlementTypesWriter] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.logger = get_logger("permissions.catalog")
        self.store = store
        self.writer = writer or EntitlementTypesWriter(None)
        self.metrics = metrics
        self.initializer = CatalogInitializer(after_flush=self._write_artifact)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[ChangeListener] = []

    def on_change(self, listener: ChangeListener):
        """Call `listener(name)` after each persisted registration."""
        self._listeners.append(listener)

    def build(
        self,
        name: str,
        description: str,
        group: str,
        applies_to: Iterable[str] = (),
        permissions: Iterable[str] = (),
        features: Iterable[str] = (),
        default_feature_scopes: Iterable[str] = ()
    ) -> Entitlement:
        """Validate a definition and return the row that would be stored."""
        if not isinstance(name, str) or not NAME_PATTERN.match(name):
            raise InvalidEntitlementNameError(str(name))

        permissions = list(permissions)
        applies_to = list(dict.fromkeys(applies_to))
        rules = parse_permissions(permissions)

        if applies_to:
            inert = [
                p for p, rule in zip(permissions, rules)
                if rule.entity_type != WILDCARD and rule.entity_type not in applies_to
            ]
            if inert:
                self.logger.warning(
                    "Entitlement rules reference entity types outside applies_to",
                    entitlement=name,
                    rules=inert
                )

        return Entitlement(
            id=str(uuid.uuid4()),
            name=name,
            group=group,
            description=description,
            applies_to=applies_to,
            permissions=permissions,
            features=list(features),
            default_feature_scopes=list(default_feature_scopes)
        )

    def declare(self, name: str, description: str, group: str, applies_to: Iterable[str] = (),
                permissions: Iterable[str] = (), features: Iterable[str] = (),
                default_feature_scopes: Iterable[str] = ()) -> Entitlement:
        """Synchronously declare an entitlement before storage is ready."""
        entitlement = self.build(name, description, group, applies_to, permissions,
                                 features, default_feature_scopes)
        self.initializer.enqueue(partial(self._persist, entitlement, False))
        self._record("queued")
        return entitlement

    async def register(self, name: str, description: str, group: str, applies_to: Iterable[str] = (),
                       permissions: Iterable[str] = (), features: Iterable[str] = (),
                       default_feature_scopes: Iterable[str] = ()) -> Entitlement:
        """Register an entitlement, replacing any existing one with the same name.

        Before readiness the registration is queued and this returns at once;
        afterwards it is persisted before returning.
        """
        entitlement = self.build(name, description, group, applies_to, permissions,
                                 features, default_feature_scopes)
        immediate = self.initializer.flushed
        await self.initializer.submit(partial(self._persist, entitlement, immediate))
        self._record("immediate" if immediate else "queued")
        return entitlement

    async def ready(self) -> int:
        """Readiness signal from the entitlement store; flushes the queue once."""
        return await self.initializer.flush()

    async def get(self, name: str) -> Optional[Entitlement]:
        async with storage_operation("get_entitlement", self.logger):
            return await self.store.get_entitlement(name)

    async def all(self) -> List[Entitlement]:
        async with storage_operation("all_entitlements", self.logger):
            return await self.store.all_entitlements()

    async def permission(self, name: str) -> Optional[EntitlementPermission]:
        entitlement = await self.get(name)
        if entitlement is None:
            return None
        return EntitlementPermission.from_entitlement(entitlement)

    async def _persist(self, entitlement: Entitlement, write_artifact: bool):
        lock = self._locks.setdefault(entitlement.name, asyncio.Lock())
        async with lock:
            async with storage_operation("save_entitlement", self.logger):
                existing = await self.store.get_entitlement(entitlement.name)
                if existing is not None:
                    entitlement.id = existing.id
                    entitlement.created_at = existing.created_at
                    self.logger.info("Updating entitlement", entitlement=entitlement.name)
                else:
                    self.logger.info("Creating entitlement", entitlement=entitlement.name)
                await self.store.save_entitlement(entitlement)

        for listener in self._listeners:
            await listener(entitlement.name)
        if write_artifact:
            await self._write_artifact()

    async def _write_artifact(self):
        if not self.writer.enabled:
            return
        try:
            entitlements = await self.all()
        except StorageError:
            self.logger.error("Skipping entitlement types; entitlements could not be read")
            return
        await self.writer.write(entitlements)

    def _record(self, mode: str):
        if self.metrics is not None:
            self.metrics.record_registration(mode)
