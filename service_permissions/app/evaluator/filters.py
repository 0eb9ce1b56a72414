"""
Property-level filtering of records for read-class actions.
"""

import inspect
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from shared.logging import get_logger, log_context
from ..grants.resolver import GrantResolver, GrantSnapshot
from ..overrides.registry import RequestContext
from ..rules.entities import EntityRegistry
from ..rules.models import Account, Action, PropertyAction, Record, action_name
from .memo import AsyncMemo
from .pipeline import DecisionPipeline

ADMIN = "admin"

ResultCallback = Callable[[Record, Dict[str, Any]], Any]


class PropertyFilter:
    """Reduces records to the fields an account may see.

    Denied fields are omitted from the result, never nulled.
    """

    def __init__(self, resolver: GrantResolver, pipeline: DecisionPipeline, entities: EntityRegistry):
        self.logger = get_logger("permissions.filter")
        self.resolver = resolver
        self.pipeline = pipeline
        self.entities = entities

    async def filter_batch(
        self,
        account: Account,
        records: Sequence[Record],
        action: Action = PropertyAction.READ
    ) -> List[Dict[str, Any]]:
        """Filter a batch; one dict per input record, `{}` when nothing is visible."""
        action = action_name(action)
        for record in records:
            self.entities.require(record.entity_type)

        grants = AsyncMemo(lambda: self.resolver.rulesets_of(account))
        admin = AsyncMemo(lambda: self.pipeline.is_admin(account))
        with log_context(account_id=account.id):
            return [
                await self.filter_one("filter_batch", account, record, action, grants, admin.get)
                for record in records
            ]

    def filter_pipe(
        self,
        account: Account,
        action: Action = PropertyAction.READ,
        on_result: Optional[ResultCallback] = None
    ) -> "FilterPipe":
        """Reusable per-record filter for a stream of records."""
        return FilterPipe(self, account, action_name(action), on_result)

    async def filter_one(self, entry_point: str, account: Account, record: Record, action: str,
                         grants: AsyncMemo, admin=None) -> Dict[str, Any]:
        ctx = RequestContext(account, action, record.entity_type, record=record,
                             attributes=record.attributes)
        decision = await self.pipeline.precheck(entry_point, ctx, admin)
        if decision is not None:
            return dict(record.data) if decision.allowed else {}

        snapshot = await grants.get()
        visible = self.visible_fields(snapshot, record, action)
        self.pipeline.ruleset(entry_point, bool(visible))
        return visible

    def visible_fields(self, snapshot: GrantSnapshot, record: Record, action: str) -> Dict[str, Any]:
        """Fields of `record` matched by at least one applicable grant."""
        applicable = snapshot.applicable(record, action)
        if not applicable:
            return {}

        fields = self.entities.fields(record.entity_type)
        return {
            name: value for name, value in record.data.items()
            if any(g.permission.test(record.entity_type, action, name, fields) for g in applicable)
        }


class FilterPipe:
    """Per-record filter over a live stream.

    The account's grants (or the ``"admin"`` sentinel) are resolved once,
    on the first record, and shared by every later record, including ones
    that arrive while that resolution is still in flight.
    """

    def __init__(self, property_filter: PropertyFilter, account: Account, action: str,
                 on_result: Optional[ResultCallback] = None):
        self.filter = property_filter
        self.account = account
        self.action = action
        self.on_result = on_result
        self._grants: AsyncMemo[Union[str, GrantSnapshot]] = AsyncMemo(self._resolve)

    @property
    def resolved(self) -> bool:
        return self._grants.resolved

    async def __call__(self, record: Record) -> Dict[str, Any]:
        self.filter.entities.require(record.entity_type)
        with log_context(account_id=self.account.id):
            visible = await self.filter.filter_one(
                "filter_pipe", self.account, record, self.action,
                _SnapshotOnly(self._grants), self._is_admin
            )
        if visible and self.on_result is not None:
            result = self.on_result(record, visible)
            if inspect.isawaitable(result):
                await result
        return visible

    async def _resolve(self) -> Union[str, GrantSnapshot]:
        if await self.filter.pipeline.is_admin(self.account):
            return ADMIN
        return await self.filter.resolver.rulesets_of(self.account)

    async def _is_admin(self) -> bool:
        return await self._grants.get() == ADMIN


class _SnapshotOnly:
    """Memo view that only ever yields a snapshot; admin was handled upstream."""

    def __init__(self, memo: AsyncMemo):
        self._memo = memo

    async def get(self) -> GrantSnapshot:
        resolved = await self._memo.get()
        if resolved == ADMIN:
            return GrantSnapshot(subject=ADMIN)
        return resolved
