"""
PostgreSQL persistence layer for roles, entitlements and rulesets.
"""

from typing import List, Optional, Sequence, Tuple

import asyncpg
from shared.errors import AccessLayerException
from shared.logging import get_logger
from ..rules.models import (
    AccountRuleset, Entitlement, Role, RoleMembership, RoleRuleset
)
from .base import PermissionStore, PROTECTED_ENTITY_TYPES

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS role (
        id VARCHAR(255) PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS role_account (
        id VARCHAR(255) PRIMARY KEY,
        role VARCHAR(255) NOT NULL,
        account VARCHAR(255) NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        UNIQUE (role, account)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS entitlements (
        id VARCHAR(255) PRIMARY KEY,
        name VARCHAR(255) NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT '',
        "group" TEXT NOT NULL,
        applies_to TEXT[] NOT NULL DEFAULT '{}',
        permissions TEXT[] NOT NULL DEFAULT '{}',
        features TEXT[] NOT NULL DEFAULT '{}',
        default_feature_scopes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS role_rulesets (
        id VARCHAR(255) PRIMARY KEY,
        role VARCHAR(255) NOT NULL,
        entitlement VARCHAR(255) NOT NULL,
        target_attribute TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        feature_scopes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        UNIQUE (role, entitlement, target_attribute)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS account_rulesets (
        id VARCHAR(255) PRIMARY KEY,
        account VARCHAR(255) NOT NULL,
        entitlement VARCHAR(255) NOT NULL,
        target_attribute TEXT NOT NULL,
        feature_scopes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        UNIQUE (account, entitlement, target_attribute)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_role_account_account ON role_account(account);",
    "CREATE INDEX IF NOT EXISTS idx_role_rulesets_role ON role_rulesets(role);",
    "CREATE INDEX IF NOT EXISTS idx_account_rulesets_account ON account_rulesets(account);",
)


class PostgreSQLPermissionStore(PermissionStore):
    """asyncpg-backed permission store."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        super().__init__()
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("permissions.storage.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30
            )
            await self._create_tables()
        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e))

        self.logger.info("PostgreSQL persistence started")
        for entity_type in PROTECTED_ENTITY_TYPES:
            await self._mark_ready(entity_type)

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA:
                    await conn.execute(statement)

    # Roles
    async def save_role(self, role: Role) -> Role:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO role (id, name, description, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    updated_at = EXCLUDED.updated_at
            """, role.id, role.name, role.description, role.created_at, role.updated_at)
        return role

    async def get_role(self, role_id: str) -> Optional[Role]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM role WHERE id = $1", role_id)
        return self._row_to_role(row) if row else None

    async def delete_role(self, role_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM role WHERE id = $1", role_id)
        return result == "DELETE 1"

    async def search_roles(self, key: str, offset: int, limit: int) -> List[Role]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM role WHERE name ILIKE $1
                ORDER BY name OFFSET $2 LIMIT $3
            """, f"%{key}%", offset, limit)
        return [self._row_to_role(row) for row in rows]

    async def roles_for_account(self, account_id: str) -> List[Role]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT r.* FROM role r
                INNER JOIN role_account ra ON ra.role = r.id
                WHERE ra.account = $1
            """, account_id)
        return [self._row_to_role(row) for row in rows]

    # Memberships
    async def add_membership(self, membership: RoleMembership) -> RoleMembership:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO role_account (id, role, account, created_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (role, account) DO NOTHING
            """, membership.id, membership.role, membership.account, membership.created_at)
        return membership

    async def get_membership(self, role_id: str, account_id: str) -> Optional[RoleMembership]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM role_account WHERE role = $1 AND account = $2 LIMIT 1",
                role_id, account_id
            )
        return self._row_to_membership(row) if row else None

    async def delete_membership(self, membership_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM role_account WHERE id = $1", membership_id)
        return result == "DELETE 1"

    async def memberships_for_role(self, role_id: str) -> List[RoleMembership]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM role_account WHERE role = $1", role_id)
        return [self._row_to_membership(row) for row in rows]

    async def delete_memberships(self, role_id: Optional[str] = None,
                                 account_id: Optional[str] = None) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                DELETE FROM role_account
                WHERE ($1::varchar IS NULL OR role = $1)
                  AND ($2::varchar IS NULL OR account = $2)
            """, role_id, account_id)
        return self._affected(result)

    # Entitlements
    async def get_entitlement(self, name: str) -> Optional[Entitlement]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM entitlements WHERE name = $1", name)
        return self._row_to_entitlement(row) if row else None

    async def all_entitlements(self) -> List[Entitlement]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM entitlements ORDER BY name")
        return [self._row_to_entitlement(row) for row in rows]

    async def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        # Single statement, so readers never see a half-replaced definition
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO entitlements (
                    id, name, description, "group", applies_to, permissions,
                    features, default_feature_scopes, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (name) DO UPDATE SET
                    description = EXCLUDED.description,
                    "group" = EXCLUDED."group",
                    applies_to = EXCLUDED.applies_to,
                    permissions = EXCLUDED.permissions,
                    features = EXCLUDED.features,
                    default_feature_scopes = EXCLUDED.default_feature_scopes,
                    updated_at = EXCLUDED.updated_at
            """,
                entitlement.id, entitlement.name, entitlement.description, entitlement.group,
                entitlement.applies_to, entitlement.permissions, entitlement.features,
                entitlement.default_feature_scopes, entitlement.created_at, entitlement.updated_at
            )
        return entitlement

    # Rulesets
    async def save_role_ruleset(self, ruleset: RoleRuleset) -> RoleRuleset:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO role_rulesets (
                    id, role, entitlement, target_attribute, name, description,
                    feature_scopes, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
                ruleset.id, ruleset.role, ruleset.entitlement, ruleset.target_attribute,
                ruleset.name, ruleset.description, ruleset.feature_scopes, ruleset.created_at
            )
        return ruleset

    async def find_role_ruleset(self, role_id: str, entitlement: str,
                                target_attribute: str) -> Optional[RoleRuleset]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM role_rulesets
                WHERE role = $1 AND entitlement = $2 AND target_attribute = $3
            """, role_id, entitlement, target_attribute)
        return self._row_to_role_ruleset(row) if row else None

    async def delete_role_ruleset(self, ruleset_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM role_rulesets WHERE id = $1", ruleset_id)
        return result == "DELETE 1"

    async def delete_role_rulesets(self, role_id: str) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM role_rulesets WHERE role = $1", role_id)
        return self._affected(result)

    async def role_rulesets_for_roles(self, role_ids: Sequence[str]) -> List[RoleRuleset]:
        if not role_ids:
            return []
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM role_rulesets WHERE role = ANY($1::varchar[])", list(role_ids)
            )
        return [self._row_to_role_ruleset(row) for row in rows]

    async def role_rulesets_for_account(self, account_id: str) -> List[RoleRuleset]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT rr.* FROM role_rulesets rr
                INNER JOIN role r ON rr.role = r.id
                INNER JOIN role_account ra ON ra.role = r.id
                WHERE ra.account = $1
            """, account_id)
        return [self._row_to_role_ruleset(row) for row in rows]

    async def save_account_ruleset(self, ruleset: AccountRuleset) -> AccountRuleset:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO account_rulesets (
                    id, account, entitlement, target_attribute, feature_scopes, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
            """,
                ruleset.id, ruleset.account, ruleset.entitlement, ruleset.target_attribute,
                ruleset.feature_scopes, ruleset.created_at
            )
        return ruleset

    async def find_account_ruleset(self, account_id: str, entitlement: str,
                                   target_attribute: str) -> Optional[AccountRuleset]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM account_rulesets
                WHERE account = $1 AND entitlement = $2 AND target_attribute = $3
            """, account_id, entitlement, target_attribute)
        return self._row_to_account_ruleset(row) if row else None

    async def delete_account_ruleset(self, ruleset_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM account_rulesets WHERE id = $1", ruleset_id)
        return result == "DELETE 1"

    async def delete_account_rulesets(self, account_id: str) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM account_rulesets WHERE account = $1", account_id)
        return self._affected(result)

    async def account_rulesets_for_account(self, account_id: str) -> List[AccountRuleset]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM account_rulesets WHERE account = $1", account_id)
        return [self._row_to_account_ruleset(row) for row in rows]

    # Cascades
    async def delete_role_cascade(self, role_id: str) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM role_rulesets WHERE role = $1", role_id)
                await conn.execute("DELETE FROM role_account WHERE role = $1", role_id)
                result = await conn.execute("DELETE FROM role WHERE id = $1", role_id)
        return result == "DELETE 1"

    async def delete_account_cascade(self, account_id: str) -> Tuple[int, int]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                memberships = await conn.execute("DELETE FROM role_account WHERE account = $1", account_id)
                rulesets = await conn.execute("DELETE FROM account_rulesets WHERE account = $1", account_id)
        return self._affected(memberships), self._affected(rulesets)

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (OSError, asyncpg.PostgresError):
            return False

    @staticmethod
    def _affected(result: str) -> int:
        # asyncpg returns the command tag, e.g. "DELETE 3"
        try:
            return int(result.split()[-1])
        except (ValueError, IndexError):
            return 0

    def _row_to_role(self, row) -> Role:
        return Role(
            id=row['id'],
            name=row['name'],
            description=row['description'],
            created_at=row['created_at'],
            updated_at=row['updated_at']
        )

    def _row_to_membership(self, row) -> RoleMembership:
        return RoleMembership(
            id=row['id'],
            role=row['role'],
            account=row['account'],
            created_at=row['created_at']
        )

    def _row_to_entitlement(self, row) -> Entitlement:
        return Entitlement(
            id=row['id'],
            name=row['name'],
            group=row['group'],
            description=row['description'],
            applies_to=list(row['applies_to']),
            permissions=list(row['permissions']),
            features=list(row['features']),
            default_feature_scopes=list(row['default_feature_scopes']),
            created_at=row['created_at'],
            updated_at=row['updated_at']
        )

    def _row_to_role_ruleset(self, row) -> RoleRuleset:
        return RoleRuleset(
            id=row['id'],
            role=row['role'],
            entitlement=row['entitlement'],
            target_attribute=row['target_attribute'],
            name=row['name'],
            description=row['description'],
            feature_scopes=list(row['feature_scopes']),
            created_at=row['created_at']
        )

    def _row_to_account_ruleset(self, row) -> AccountRuleset:
        return AccountRuleset(
            id=row['id'],
            account=row['account'],
            entitlement=row['entitlement'],
            target_attribute=row['target_attribute'],
            feature_scopes=list(row['feature_scopes']),
            created_at=row['created_at']
        )
