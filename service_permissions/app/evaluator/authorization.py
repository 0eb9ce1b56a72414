"""
Point authorization checks over resolved grants.
"""

from typing import Iterable, List, Optional, Sequence, Union

from shared.errors import PermissionDeniedError
from shared.logging import get_logger, log_context
from ..catalog.permissions import EntitlementPermission
from ..grants.resolver import GrantResolver, GrantSnapshot, can_do_one
from ..overrides.registry import RequestContext
from ..rules.models import Account, Action, DataAction, Record, Role, action_name
from .memo import AsyncMemo
from .pipeline import Decision, DecisionPipeline

FEATURE_ACTION = "feature"


class AuthorizationEvaluator:
    """Answers can-create and can-do questions.

    Every entry point runs through the decision pipeline and resolves an
    account's grants at most once per call, however many records it
    covers.
    """

    def __init__(self, resolver: GrantResolver, pipeline: DecisionPipeline):
        self.logger = get_logger("permissions.evaluator")
        self.resolver = resolver
        self.pipeline = pipeline

    async def can_create(self, account: Account, entity_type: str, attributes: Iterable[str]) -> bool:
        """Whether `account` may create an `entity_type` record carrying every tag in `attributes`."""
        attributes = list(attributes)
        ctx = RequestContext(account, DataAction.CREATE.value, entity_type, attributes=attributes)
        grants = AsyncMemo(lambda: self.resolver.rulesets_of(account))

        def covered(snapshot: GrantSnapshot) -> bool:
            targets = snapshot.creatable_targets(entity_type)
            return bool(targets) and all(tag in targets for tag in attributes)

        with log_context(account_id=account.id):
            decision = await self.pipeline.decide("can_create", ctx, grants, covered)
        return decision.allowed

    @staticmethod
    def can_do_one(permission: EntitlementPermission, target_attribute: str, record: Record, action: Action) -> bool:
        return can_do_one(permission, target_attribute, record, action_name(action))

    async def account_can_do(self, account: Account, records: Sequence[Record], action: Action) -> List[bool]:
        """One verdict per record, in input order."""
        decisions = await self.account_decisions(account, records, action)
        return [d.allowed for d in decisions]

    async def account_decisions(self, account: Account, records: Sequence[Record], action: Action) -> List[Decision]:
        action = action_name(action)
        grants = AsyncMemo(lambda: self.resolver.rulesets_of(account))
        admin = AsyncMemo(lambda: self.pipeline.is_admin(account))
        with log_context(account_id=account.id):
            return await self._decide_all("account_can_do", account, records, action, grants, admin.get)

    async def roles_can_do(self, roles: Sequence[Union[Role, str]], records: Sequence[Record],
                           action: Action) -> List[bool]:
        """Like `account_can_do` but for the union of the given roles' rulesets.

        No account is involved, so account-keyed overrides and the admin
        check never apply.
        """
        action = action_name(action)
        grants = AsyncMemo(lambda: self.resolver.rulesets_of_roles(roles))
        decisions = await self._decide_all("roles_can_do", None, records, action, grants)
        return [d.allowed for d in decisions]

    async def can_do(self, account: Account, record: Record, action: Action) -> bool:
        results = await self.account_can_do(account, [record], action)
        return results[0]

    async def can_do_feature(self, account: Account, feature: str, scope: Optional[str] = None) -> bool:
        """Whether some grant of `account` unlocks `feature` (optionally within `scope`)."""
        ctx = RequestContext(account, FEATURE_ACTION, feature, payload={"scope": scope})
        grants = AsyncMemo(lambda: self.resolver.rulesets_of(account))
        with log_context(account_id=account.id):
            decision = await self.pipeline.decide(
                "can_do_feature", ctx, grants,
                lambda snapshot: snapshot.grants_feature(feature, scope)
            )
        return decision.allowed

    async def authorize(self, account: Account, record: Record, action: Action):
        """Raise PermissionDeniedError unless `account` may perform `action` on `record`."""
        if not await self.can_do(account, record, action):
            raise PermissionDeniedError(account.id, action_name(action), record.entity_type)

    async def authorize_create(self, account: Account, entity_type: str, attributes: Iterable[str]):
        if not await self.can_create(account, entity_type, attributes):
            raise PermissionDeniedError(account.id, DataAction.CREATE.value, entity_type)

    async def _decide_all(self, entry_point: str, account: Optional[Account], records: Sequence[Record],
                          action: str, grants: AsyncMemo, admin=None) -> List[Decision]:
        decisions = []
        for record in records:
            ctx = RequestContext(account, action, record.entity_type, record=record,
                                 attributes=record.attributes)
            decision = await self.pipeline.decide(
                entry_point, ctx, grants,
                lambda snapshot: snapshot.can_do(record, action),
                admin
            )
            decisions.append(decision)
        return decisions
