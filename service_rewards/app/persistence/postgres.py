"""
PostgreSQL policy source for the Rewards Service.

Each published version is its own row, keyed by (policy_id, version). Reads
return the latest version of each policy, so archiving a policy is publishing
a newer ARCHIVED row; older rows remain for audit replay.
"""

import json
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import PolicyValidationError, RewardsException
from shared.logging import get_logger
from ..policies.definitions import parse_policy, policy_to_dict, validate_policy
from ..policies.models import Policy, PolicyState


class PostgresPolicySource:
    """PostgreSQL-backed, versioned policy source."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10, command_timeout: float = 30):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("rewards.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            await self._create_tables()
            self.logger.info("PostgreSQL policy source started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL policy source", error=str(e))
            raise RewardsException("POSTGRES_START_FAILED", str(e)) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL policy source stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS reward_policies (
                    policy_id VARCHAR(255) NOT NULL,
                    version INTEGER NOT NULL,
                    name VARCHAR(255) NOT NULL,
                    tenant_id VARCHAR(255),
                    event_types TEXT[] NOT NULL DEFAULT '{}',
                    state VARCHAR(20) NOT NULL,
                    definition JSONB NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (policy_id, version)
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_reward_policies_latest
                ON reward_policies(policy_id, version DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_reward_policies_event_types
                ON reward_policies USING GIN (event_types);
            """)

    async def save_policy(self, policy: Policy) -> Policy:
        """Insert a new policy version. Existing versions are never overwritten."""
        validate_policy(policy)
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO reward_policies (
                        policy_id, version, name, tenant_id, event_types, state, definition
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    policy.policy_id,
                    policy.version,
                    policy.name,
                    policy.tenant_id,
                    sorted(policy.event_types),
                    policy.state.value,
                    json.dumps(policy_to_dict(policy))
                )
        except asyncpg.UniqueViolationError as e:
            raise PolicyValidationError(
                "Policy version already exists",
                details={"policy_id": policy.policy_id, "version": policy.version}
            ) from e

        self.logger.info("Policy version saved", policy_id=policy.policy_id, version=policy.version)
        return policy

    async def list_active_policies(self, tenant_id: str, event_type: str) -> List[Policy]:
        """Latest version of each policy, when that version is ACTIVE and in scope.

        The latest version is picked before the scope filter, so a version that
        moves a policy to another tenant hides the earlier ones here.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT policy_id, version, state, definition
                FROM (
                    SELECT DISTINCT ON (policy_id) policy_id, version, tenant_id, event_types, state, definition
                    FROM reward_policies
                    ORDER BY policy_id, version DESC
                ) latest
                WHERE (tenant_id IS NULL OR tenant_id = $1)
                  AND (cardinality(event_types) = 0 OR $2 = ANY(event_types))
                  AND state = $3
                ORDER BY policy_id
                """,
                tenant_id,
                event_type,
                PolicyState.ACTIVE.value
            )

        policies = []
        for row in rows:
            try:
                policies.append(self._row_to_policy(row))
            except PolicyValidationError as e:
                # One corrupt row must not hide the tenant's other policies
                self.logger.error(
                    "Skipping invalid stored policy",
                    policy_id=row["policy_id"],
                    version=row["version"],
                    details=e.details
                )
        return policies

    async def get_policy_version(self, policy_id: str, version: int) -> Optional[Policy]:
        """Fetch one exact version, for audit replay."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT policy_id, version, state, definition FROM reward_policies "
                "WHERE policy_id = $1 AND version = $2",
                policy_id,
                version
            )
        return self._row_to_policy(row) if row else None

    async def list_versions(self, policy_id: str) -> List[Policy]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT policy_id, version, state, definition FROM reward_policies "
                "WHERE policy_id = $1 ORDER BY version",
                policy_id
            )
        return [self._row_to_policy(row) for row in rows]

    async def health_check(self) -> bool:
        """Check PostgreSQL health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return False

    def _row_to_policy(self, row: Any) -> Policy:
        definition: Dict[str, Any] = row["definition"]
        if isinstance(definition, str):
            definition = json.loads(definition)
        return parse_policy(definition)
