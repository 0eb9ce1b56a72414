"""
Redis caching layer for resolved grants.
"""

from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from pydantic import BaseModel, Field, TypeAdapter
from shared.errors import AccessLayerException
from shared.logging import get_logger
from ..rules.models import AccountRuleset, Entitlement, RoleRuleset


class CachedRulesets(BaseModel):
    """Ruleset rows reachable from one account, as cached."""
    role_rulesets: List[RoleRuleset] = Field(default_factory=list)
    account_rulesets: List[AccountRuleset] = Field(default_factory=list)


_entitlements_adapter = TypeAdapter(List[Entitlement])


class RedisGrantCache:
    """Caches ruleset rows per account and the entitlement table.

    Only raw rows are cached; permission strings are re-parsed on load.
    Any Redis failure is logged and reported as a miss, so the store stays
    the source of truth.
    """

    RULESETS_PREFIX = "perm:rulesets:"
    ENTITLEMENTS_KEY = "perm:entitlements:all"

    def __init__(
        self,
        redis_url: str,
        ruleset_ttl: int = 300,
        entitlement_ttl: int = 3600,
        client: Optional[redis.Redis] = None
    ):
        self.redis_url = redis_url
        self.logger = get_logger("permissions.cache.redis")
        self.redis: Optional[redis.Redis] = client
        self.ruleset_ttl = ruleset_ttl
        self.entitlement_ttl = entitlement_ttl
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "invalidations": 0}

    async def start(self):
        """Start the Redis cache."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
            await self.redis.ping()
        except RedisError as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise AccessLayerException("REDIS_START_FAILED", str(e))

        self.logger.info("Redis cache started")

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis cache stopped")

    async def get_rulesets(self, account_id: str) -> Optional[CachedRulesets]:
        """Get cached ruleset rows for an account."""
        try:
            cached = await self.redis.get(self._rulesets_key(account_id))
            if cached is None:
                self.stats["misses"] += 1
                return None
            rulesets = CachedRulesets.model_validate_json(cached)
        except (RedisError, ValueError) as e:
            self.logger.error("Error reading cached rulesets", account_id=account_id, error=str(e))
            self.stats["misses"] += 1
            return None

        self.stats["hits"] += 1
        return rulesets

    async def set_rulesets(self, account_id: str, rulesets: CachedRulesets) -> bool:
        """Cache ruleset rows for an account."""
        try:
            await self.redis.setex(
                self._rulesets_key(account_id),
                self.ruleset_ttl,
                rulesets.model_dump_json()
            )
        except RedisError as e:
            self.logger.error("Error caching rulesets", account_id=account_id, error=str(e))
            return False

        self.stats["sets"] += 1
        return True

    async def get_entitlements(self) -> Optional[List[Entitlement]]:
        """Get the cached entitlement table."""
        try:
            cached = await self.redis.get(self.ENTITLEMENTS_KEY)
            if cached is None:
                self.stats["misses"] += 1
                return None
            entitlements = _entitlements_adapter.validate_json(cached)
        except (RedisError, ValueError) as e:
            self.logger.error("Error reading cached entitlements", error=str(e))
            self.stats["misses"] += 1
            return None

        self.stats["hits"] += 1
        return entitlements

    async def set_entitlements(self, entitlements: List[Entitlement]) -> bool:
        """Cache the entitlement table."""
        try:
            await self.redis.setex(
                self.ENTITLEMENTS_KEY,
                self.entitlement_ttl,
                _entitlements_adapter.dump_json(entitlements)
            )
        except RedisError as e:
            self.logger.error("Error caching entitlements", error=str(e))
            return False

        self.stats["sets"] += 1
        return True

    async def invalidate_account(self, account_id: str) -> bool:
        """Drop the cached rulesets of one account."""
        try:
            await self.redis.delete(self._rulesets_key(account_id))
        except RedisError as e:
            self.logger.error("Error invalidating account rulesets", account_id=account_id, error=str(e))
            return False

        self.stats["invalidations"] += 1
        return True

    async def invalidate_entitlements(self) -> bool:
        """Drop the cached entitlement table."""
        try:
            await self.redis.delete(self.ENTITLEMENTS_KEY)
        except RedisError as e:
            self.logger.error("Error invalidating entitlements", error=str(e))
            return False

        self.stats["invalidations"] += 1
        return True

    async def clear_cache(self) -> int:
        """Drop every cached ruleset and the entitlement table."""
        try:
            keys = [key async for key in self.redis.scan_iter(match=f"{self.RULESETS_PREFIX}*")]
            keys.append(self.ENTITLEMENTS_KEY)
            deleted = await self.redis.delete(*keys)
        except RedisError as e:
            self.logger.error("Error clearing cache", error=str(e))
            return 0

        self.stats["invalidations"] += 1
        self.logger.info("Cache cleared", count=deleted)
        return deleted

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": (self.stats["hits"] / total) if total else 0.0
        }

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except RedisError:
            return False

    def _rulesets_key(self, account_id: str) -> str:
        return f"{self.RULESETS_PREFIX}{account_id}"
