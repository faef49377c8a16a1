"""
Unit tests for the PostgreSQL policy source.
"""

import json
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import PolicyValidationError, RewardsException
from service_rewards.app.persistence.postgres import PostgresPolicySource
from service_rewards.app.policies.definitions import policy_to_dict
from service_rewards.app.policies.models import FlatBonusAction, Policy, PolicyState


def make_policy(policy_id, version=1, **kwargs):
    kwargs.setdefault("actions", [FlatBonusAction(Decimal(10))])
    return Policy(policy_id, policy_id, version=version, **kwargs)


def make_row(policy, state=None):
    return {
        "policy_id": policy.policy_id,
        "version": policy.version,
        "state": (state or policy.state).value,
        "definition": json.dumps(policy_to_dict(policy)),
    }


class TestPostgresPolicySource:
    """Test cases for PostgresPolicySource."""

    @pytest.fixture
    def conn(self):
        """Mock connection."""
        return AsyncMock()

    @pytest.fixture
    def pool(self, conn):
        """Mock pool whose acquire() yields the mock connection."""
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        pool.close = AsyncMock()
        return pool

    @pytest.fixture
    def source(self, pool):
        """Create a source wired to the mock pool."""
        source = PostgresPolicySource("postgres://localhost/rewards")
        source.pool = pool
        return source

    @pytest.mark.asyncio
    async def test_start_creates_tables(self, pool, conn):
        """Test start opens the pool and creates the schema."""
        source = PostgresPolicySource("postgres://localhost/rewards")

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)) as create_pool:
            await source.start()

        create_pool.assert_awaited_once()
        assert conn.execute.await_count == 3
        assert "CREATE TABLE IF NOT EXISTS reward_policies" in conn.execute.await_args_list[0].args[0]

    @pytest.mark.asyncio
    async def test_start_failure(self):
        """Test a connection failure is wrapped."""
        source = PostgresPolicySource("postgres://localhost/rewards")

        with patch("asyncpg.create_pool", new=AsyncMock(side_effect=OSError("connection refused"))):
            with pytest.raises(RewardsException) as exc_info:
                await source.start()

        assert exc_info.value.code == "POSTGRES_START_FAILED"

    @pytest.mark.asyncio
    async def test_stop_closes_pool(self, source, pool):
        """Test stop closes and forgets the pool."""
        await source.stop()

        pool.close.assert_awaited_once()
        assert source.pool is None

    @pytest.mark.asyncio
    async def test_save_policy(self, source, conn):
        """Test saving inserts a versioned row."""
        policy = make_policy("gold-bonus", version=2, tenant_id="tenant-1", event_types=["purchase"])

        await source.save_policy(policy)

        args = conn.execute.await_args.args
        assert "INSERT INTO reward_policies" in args[0]
        assert args[1:7] == ("gold-bonus", 2, "gold-bonus", "tenant-1", ["purchase"], "active")
        assert json.loads(args[7])["actions"] == [{"kind": "flat_bonus", "amount": 10}]

    @pytest.mark.asyncio
    async def test_save_existing_version_rejected(self, source, conn):
        """Test a duplicate (policy_id, version) is rejected."""
        conn.execute.side_effect = asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(PolicyValidationError) as exc_info:
            await source.save_policy(make_policy("gold-bonus"))

        assert exc_info.value.details == {"policy_id": "gold-bonus", "version": 1}

    @pytest.mark.asyncio
    async def test_save_invalid_policy_rejected(self, source, conn):
        """Test validation runs before the insert."""
        with pytest.raises(PolicyValidationError):
            await source.save_policy(Policy("empty", "Empty"))

        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_active_policies(self, source, conn):
        """Test rows are parsed and a corrupt row skipped."""
        conn.fetch.return_value = [
            make_row(make_policy("active", version=3)),
            {"policy_id": "corrupt", "version": 1, "state": "active", "definition": {"policy_id": "corrupt"}},
        ]

        policies = await source.list_active_policies("tenant-1", "purchase")

        assert [(p.policy_id, p.version) for p in policies] == [("active", 3)]
        assert conn.fetch.await_args.args[1:] == ("tenant-1", "purchase", "active")

    @pytest.mark.asyncio
    async def test_latest_version_picked_before_scope_filter(self, source, conn):
        """Test an earlier version cannot match a scope its latest version left."""
        conn.fetch.return_value = []

        await source.list_active_policies("tenant-1", "purchase")

        query = " ".join(conn.fetch.await_args.args[0].split())
        latest = query.index("SELECT DISTINCT ON (policy_id)")
        assert latest < query.index("ORDER BY policy_id, version DESC") < query.index(") latest")
        assert query.index(") latest") < query.index("WHERE (tenant_id IS NULL OR tenant_id = $1)")
        assert "AND state = $3" in query
        assert query.count("WHERE") == 1

    @pytest.mark.asyncio
    async def test_get_policy_version(self, source, conn):
        """Test fetching one exact version."""
        conn.fetchrow.return_value = make_row(make_policy("gold-bonus", version=4))

        policy = await source.get_policy_version("gold-bonus", 4)

        assert policy.version == 4
        assert conn.fetchrow.await_args.args[1:] == ("gold-bonus", 4)

    @pytest.mark.asyncio
    async def test_get_missing_version(self, source, conn):
        """Test an unknown version returns None."""
        conn.fetchrow.return_value = None

        assert await source.get_policy_version("gold-bonus", 9) is None

    @pytest.mark.asyncio
    async def test_list_versions(self, source, conn):
        """Test version history is returned in order."""
        conn.fetch.return_value = [make_row(make_policy("p", version=v)) for v in (1, 2)]

        assert [p.version for p in await source.list_versions("p")] == [1, 2]

    @pytest.mark.asyncio
    async def test_health_check(self, source, conn):
        """Test health check against the pool."""
        conn.fetchval.return_value = 1
        assert await source.health_check() is True

        conn.fetchval.side_effect = OSError("gone")
        assert await source.health_check() is False

        source.pool = None
        assert await source.health_check() is False
