"""
Blocks and bypasses: hard denies and hard allows evaluated ahead of rulesets.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from shared.logging import get_logger
from ..rules.models import Account, Action, Record, WILDCARD, action_name

# Predicates may be plain functions or coroutine functions
Predicate = Callable[..., Any]


async def call_predicate(predicate: Predicate, *args) -> bool:
    """Call a sync or async predicate and coerce its result to bool."""
    result = predicate(*args)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


def _always(*args) -> bool:
    return True


@dataclass
class RequestContext:
    """Inbound request as seen by override predicates.

    `account` is None when access is checked on behalf of roles rather
    than a concrete account.
    """
    account: Optional[Account]
    action: str
    entity_type: str
    record: Optional[Record] = None
    attributes: Sequence[str] = ()
    payload: Dict[str, Any] = field(default_factory=dict)


class Override:
    """Common shape of every block and bypass."""

    kind = "override"

    def __init__(self, action: Action, entity_type: str, predicate: Optional[Predicate] = None):
        self.action = action_name(action)
        self.entity_type = entity_type
        self.predicate = predicate or _always
        self.exceptions: List[Predicate] = []

    def keyed_on(self, action: str, entity_type: str) -> bool:
        return (
            self.action in (WILDCARD, action)
            and self.entity_type in (WILDCARD, entity_type)
        )

    def except_when(self, predicate: Predicate) -> "Override":
        """Skip this override for requests matching `predicate(ctx)`."""
        self.exceptions.append(predicate)
        return self

    async def applies(self, ctx: RequestContext) -> bool:
        if not await self._matches(ctx):
            return False
        for exception in self.exceptions:
            if await call_predicate(exception, ctx):
                return False
        return True

    async def _matches(self, ctx: RequestContext) -> bool:
        return await call_predicate(self.predicate, ctx)

    def describe(self) -> str:
        return f"{self.kind}:{self.action}:{self.entity_type}"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.action}:{self.entity_type}>"


class Block(Override):
    """Hard deny keyed on the request context."""
    kind = "block"


class AccountBlock(Override):
    """Hard deny keyed only on the account, e.g. a suspension flag."""

    kind = "account_block"

    async def _matches(self, ctx: RequestContext) -> bool:
        if ctx.account is None:
            return False
        return await call_predicate(self.predicate, ctx.account)


class ActionBypass(Override):
    """Hard allow keyed on the request context."""
    kind = "bypass"


class AccountBypass(Override):
    """Hard allow keyed on the account and the record being accessed."""

    kind = "account_bypass"

    async def _matches(self, ctx: RequestContext) -> bool:
        if ctx.account is None:
            return False
        return await call_predicate(self.predicate, ctx.account, ctx.record)


class OverrideRegistry:
    """Holds every registered block and bypass.

    Overrides are checked in registration order; the first one that
    applies wins. ``*`` as action or entity type matches anything.
    """

    def __init__(self):
        self.logger = get_logger("permissions.overrides")
        self.blocks: List[Override] = []
        self.bypasses: List[Override] = []

    def block(self, action: Action, entity_type: str, predicate: Optional[Predicate] = None) -> Block:
        """Register a hard deny; without a predicate it always applies."""
        override = Block(action, entity_type, predicate)
        self.blocks.append(override)
        return override

    def account_block(self, action: Action, entity_type: str, predicate: Predicate) -> AccountBlock:
        override = AccountBlock(action, entity_type, predicate)
        self.blocks.append(override)
        return override

    def bypass(self, action: Action, entity_type: str, predicate: Optional[Predicate] = None) -> ActionBypass:
        """Register a hard allow; `except_when` carves exceptions out of it."""
        override = ActionBypass(action, entity_type, predicate)
        self.bypasses.append(override)
        return override

    def account_bypass(self, action: Action, entity_type: str, predicate: Predicate) -> AccountBypass:
        override = AccountBypass(action, entity_type, predicate)
        self.bypasses.append(override)
        return override

    async def find_block(self, ctx: RequestContext) -> Optional[Override]:
        return await self._first(self.blocks, ctx)

    async def find_bypass(self, ctx: RequestContext) -> Optional[Override]:
        return await self._first(self.bypasses, ctx)

    async def is_blocked(self, ctx: RequestContext) -> bool:
        return await self.find_block(ctx) is not None

    async def is_bypassed(self, ctx: RequestContext) -> bool:
        return await self.find_bypass(ctx) is not None

    async def _first(self, overrides: List[Override], ctx: RequestContext) -> Optional[Override]:
        for override in overrides:
            if not override.keyed_on(ctx.action, ctx.entity_type):
                continue
            if await override.applies(ctx):
                self.logger.debug(
                    "Override matched",
                    override=override.describe(),
                    action=ctx.action,
                    entity_type=ctx.entity_type
                )
                return override
        return None
