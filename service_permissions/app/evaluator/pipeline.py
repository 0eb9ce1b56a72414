"""
Decision pipeline shared by every evaluation entry point.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..grants.resolver import GrantSnapshot
from ..overrides.registry import OverrideRegistry, Predicate, RequestContext, call_predicate
from ..rules.models import Account
from .memo import AsyncMemo


class Outcome(str, Enum):
    """Which stage of the pipeline decided."""
    BLOCK = "block"
    ADMIN = "admin"
    BYPASS = "bypass"
    RULESET_ALLOW = "ruleset_allow"
    RULESET_DENY = "ruleset_deny"


@dataclass(frozen=True)
class Decision:
    """Result of one authorization decision."""
    allowed: bool
    outcome: Outcome
    reason: str = ""


def default_is_admin(account: Account) -> bool:
    return account.is_admin


AdminCheck = Callable[[], Awaitable[bool]]


class DecisionPipeline:
    """Block → admin → bypass → rulesets, in that order, for every check.

    Grants are passed in as an `AsyncMemo` so the ruleset stage resolves
    them only when a decision actually falls through to it, and only once
    per batch.
    """

    def __init__(
        self,
        overrides: OverrideRegistry,
        is_admin: Optional[Predicate] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.logger = get_logger("permissions.pipeline")
        self.overrides = overrides
        self.admin_predicate = is_admin or default_is_admin
        self.metrics = metrics

    async def is_admin(self, account: Optional[Account]) -> bool:
        if account is None:
            return False
        return await call_predicate(self.admin_predicate, account)

    async def precheck(
        self,
        entry_point: str,
        ctx: RequestContext,
        admin: Optional[AdminCheck] = None
    ) -> Optional[Decision]:
        """Run the override stages; None means the rulesets decide.

        `admin` lets batch callers share one memoized admin check.
        """
        block = await self.overrides.find_block(ctx)
        if block is not None:
            return self.record(entry_point, Decision(False, Outcome.BLOCK, block.describe()))

        is_admin = await admin() if admin is not None else await self.is_admin(ctx.account)
        if is_admin:
            return self.record(entry_point, Decision(True, Outcome.ADMIN))

        bypass = await self.overrides.find_bypass(ctx)
        if bypass is not None:
            return self.record(entry_point, Decision(True, Outcome.BYPASS, bypass.describe()))

        return None

    async def decide(
        self,
        entry_point: str,
        ctx: RequestContext,
        grants: AsyncMemo,
        test: Callable[[GrantSnapshot], bool],
        admin: Optional[AdminCheck] = None
    ) -> Decision:
        """Full decision for a yes/no check."""
        decision = await self.precheck(entry_point, ctx, admin)
        if decision is not None:
            return decision

        snapshot = await grants.get()
        return self.ruleset(entry_point, test(snapshot))

    def ruleset(self, entry_point: str, allowed: bool) -> Decision:
        outcome = Outcome.RULESET_ALLOW if allowed else Outcome.RULESET_DENY
        return self.record(entry_point, Decision(allowed, outcome))

    def record(self, entry_point: str, decision: Decision) -> Decision:
        if self.metrics is not None:
            self.metrics.record_decision(entry_point, decision.outcome.value)
        return decision
