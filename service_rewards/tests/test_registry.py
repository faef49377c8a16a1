"""
Unit tests for the policy registry cache.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import RegistryUnavailableError
from shared.metrics import MetricsCollector
from service_rewards.app.policies.models import FlatBonusAction, Policy, PolicyContext, PolicyState
from service_rewards.app.policies.registry import PolicyRegistry
from service_rewards.app.sources.memory import InMemoryPolicySource


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_policy(policy_id, version=1, **kwargs):
    kwargs.setdefault("actions", [FlatBonusAction(Decimal(10))])
    return Policy(policy_id, policy_id, version=version, **kwargs)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class CountingSource:
    """Policy source wrapper that counts fetches and can fail on demand."""

    def __init__(self, store):
        self.store = store
        self.calls = 0
        self.fail = False

    async def list_active_policies(self, tenant_id, event_type):
        self.calls += 1
        if self.fail:
            raise ConnectionError("policy store down")
        return await self.store.list_active_policies(tenant_id, event_type)


class TestPolicyRegistry:
    """Test cases for PolicyRegistry."""

    @pytest.fixture
    def store(self):
        """Create an in-memory store with a few policies."""
        return InMemoryPolicySource([
            make_policy("welcome", precedence=5),
            make_policy("purchase-bonus", precedence=10, event_types=["purchase"]),
            make_policy("other-tenant", tenant_id="tenant-2"),
            make_policy("expired", active_until=NOW - timedelta(days=1)),
            make_policy("future", active_from=NOW + timedelta(days=1)),
        ])

    @pytest.fixture
    def source(self, store):
        """Create a counting source."""
        return CountingSource(store)

    @pytest.fixture
    def clock(self):
        """Create a fake clock."""
        return FakeClock()

    @pytest.fixture
    def registry(self, source, clock):
        """Create PolicyRegistry instance."""
        return PolicyRegistry(source, ttl_seconds=60.0, fetch_timeout_seconds=0.5, clock=clock)

    @pytest.fixture
    def context(self):
        """Create a purchase context."""
        return PolicyContext("member-1", "tenant-1", "purchase", amount=Decimal("100"), timestamp=NOW)

    @pytest.mark.asyncio
    async def test_candidates_filtered_and_ordered(self, registry, context):
        """Test scope, window filtering and precedence ordering."""
        candidates = await registry.get_candidate_policies(context)

        assert [p.policy_id for p in candidates] == ["purchase-bonus", "welcome"]

    @pytest.mark.asyncio
    async def test_event_type_scope(self, registry):
        """Test event-type scoped policies are only returned for their events."""
        context = PolicyContext("member-1", "tenant-1", "login", timestamp=NOW)

        candidates = await registry.get_candidate_policies(context)

        assert [p.policy_id for p in candidates] == ["welcome"]

    @pytest.mark.asyncio
    async def test_cache_hit_skips_source(self, registry, source, context):
        """Test a fresh entry is served from cache."""
        await registry.get_candidate_policies(context)
        await registry.get_candidate_policies(context)

        assert source.calls == 1
        stats = registry.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_ttl_expiry_refetches(self, registry, source, clock, context):
        """Test an entry older than the TTL is refetched at lookup."""
        await registry.get_candidate_policies(context)
        clock.now = 61.0
        await registry.get_candidate_policies(context)

        assert source.calls == 2

    @pytest.mark.asyncio
    async def test_stale_served_when_source_fails(self, registry, source, clock, context):
        """Test the expired entry is served when a refresh fails."""
        first = await registry.get_candidate_policies(context)
        clock.now = 120.0
        source.fail = True

        second = await registry.get_candidate_policies(context)

        assert second == first
        stats = registry.get_stats()
        assert stats["stale_served"] == 1
        assert stats["fetch_failures"] == 1

    @pytest.mark.asyncio
    async def test_unavailable_without_cache(self, registry, source, context):
        """Test a failed fetch with nothing cached raises RegistryUnavailableError."""
        source.fail = True

        with pytest.raises(RegistryUnavailableError) as exc_info:
            await registry.get_candidate_policies(context)

        assert exc_info.value.status_code == 503
        assert exc_info.value.details["tenant_id"] == "tenant-1"

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, context):
        """Test a slow source is cut off by the fetch timeout."""

        async def slow_fetch(tenant_id, event_type):
            await asyncio.sleep(5)
            return []

        source = AsyncMock()
        source.list_active_policies.side_effect = slow_fetch
        registry = PolicyRegistry(source, fetch_timeout_seconds=0.01)

        with pytest.raises(RegistryUnavailableError) as exc_info:
            await registry.get_candidate_policies(context)

        assert exc_info.value.details["reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_latest_version_wins(self, context):
        """Test only the newest version of a policy is cached."""
        source = AsyncMock()
        source.list_active_policies.return_value = [
            make_policy("p", version=1),
            make_policy("p", version=3),
            make_policy("p", version=2),
        ]
        registry = PolicyRegistry(source)

        candidates = await registry.get_candidate_policies(context)

        assert [(p.policy_id, p.version) for p in candidates] == [("p", 3)]

    @pytest.mark.asyncio
    async def test_invalidate_policy(self, registry, source, context):
        """Test invalidate expires only scopes holding the policy."""
        await registry.get_candidate_policies(context)
        await registry.get_candidate_policies(PolicyContext("m", "tenant-1", "login", timestamp=NOW))

        assert registry.invalidate("purchase-bonus") == 1
        assert registry.invalidate("unknown") == 0

        await registry.get_candidate_policies(context)
        assert source.calls == 3

    @pytest.mark.asyncio
    async def test_invalidate_matches_branch_ids(self, context):
        """Test invalidating a nested branch id expires its parent's scope."""
        branch = make_policy("parent.branch")
        store = InMemoryPolicySource([make_policy("parent", any_of=[branch])])
        registry = PolicyRegistry(store)
        await registry.get_candidate_policies(context)

        assert registry.invalidate("parent.branch") == 1

    @pytest.mark.asyncio
    async def test_invalidate_scope_and_all(self, registry, source, context):
        """Test scope and full invalidation."""
        await registry.get_candidate_policies(context)
        await registry.get_candidate_policies(PolicyContext("m", "tenant-2", "purchase", timestamp=NOW))

        assert registry.invalidate_scope("tenant-2", "purchase") == 1
        assert registry.invalidate_scope(None, "purchase") == 2
        assert registry.invalidate_scope("tenant-3") == 0
        assert registry.invalidate_all() == 2

    @pytest.mark.asyncio
    async def test_invalidated_entry_is_stale_fallback(self, registry, source, context):
        """Test an invalidated entry still backs a failed refresh."""
        first = await registry.get_candidate_policies(context)
        registry.invalidate_all()
        source.fail = True

        assert await registry.get_candidate_policies(context) == first

    @pytest.mark.asyncio
    async def test_clear_drops_fallback(self, registry, source, context):
        """Test clear removes entries entirely."""
        await registry.get_candidate_policies(context)
        registry.clear()
        source.fail = True

        with pytest.raises(RegistryUnavailableError):
            await registry.get_candidate_policies(context)

    @pytest.mark.asyncio
    async def test_snapshot_unchanged_by_refresh(self, registry, store, context):
        """Test a held snapshot is not mutated by invalidation and refresh."""
        snapshot = await registry.get_candidate_policies(context)
        store.publish(make_policy("welcome", version=2, precedence=50))
        store.publish(make_policy("flash-sale", precedence=1))
        registry.invalidate("welcome")

        refreshed = await registry.get_candidate_policies(context)

        assert [(p.policy_id, p.version) for p in snapshot] == [("purchase-bonus", 1), ("welcome", 1)]
        assert [(p.policy_id, p.version) for p in refreshed] == [
            ("welcome", 2), ("purchase-bonus", 1), ("flash-sale", 1)
        ]

    @pytest.mark.asyncio
    async def test_archived_policy_disappears(self, registry, store, context):
        """Test archiving plus invalidation removes a policy from candidates."""
        await registry.get_candidate_policies(context)
        store.archive("welcome")
        registry.invalidate("welcome")

        candidates = await registry.get_candidate_policies(context)

        assert [p.policy_id for p in candidates] == ["purchase-bonus"]
        assert store.get_policy("welcome").state == PolicyState.ARCHIVED

    @pytest.mark.asyncio
    async def test_fetch_racing_invalidation_is_not_cached(self, store, context):
        """Test a fetch that overlaps an invalidation is used once, not cached."""
        started = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def gated_fetch(tenant_id, event_type):
            calls.append((tenant_id, event_type))
            started.set()
            await release.wait()
            return await store.list_active_policies(tenant_id, event_type)

        source = AsyncMock()
        source.list_active_policies.side_effect = gated_fetch
        registry = PolicyRegistry(source)

        task = asyncio.create_task(registry.get_candidate_policies(context))
        await started.wait()
        registry.invalidate_all()
        release.set()
        first = await task

        assert [p.policy_id for p in first] == ["purchase-bonus", "welcome"]
        assert registry.get_stats()["cached_scopes"] == 0

        started.clear()
        await registry.get_candidate_policies(context)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_lookup_metrics(self, source, clock, context):
        """Test cache lookups are counted in Prometheus."""
        metrics = MetricsCollector("rewards")
        registry = PolicyRegistry(source, metrics=metrics, clock=clock)

        await registry.get_candidate_policies(context)
        await registry.get_candidate_policies(context)

        assert metrics.registry.get_sample_value("policy_cache_lookups_total", {"result": "miss"}) == 1.0
        assert metrics.registry.get_sample_value("policy_cache_lookups_total", {"result": "hit"}) == 1.0

    @pytest.mark.asyncio
    async def test_stats(self, registry, clock, context):
        """Test get_stats reports cache shape."""
        await registry.get_candidate_policies(context)
        clock.now = 100.0

        stats = registry.get_stats()

        assert stats["cached_scopes"] == 1
        assert stats["fresh_scopes"] == 0
        assert stats["cached_policies"] == 4
        assert stats["ttl_seconds"] == 60.0

    @pytest.mark.asyncio
    async def test_scope_count_is_bounded(self, source, clock):
        """Test distinct tenant and event lookups cannot grow the cache past max_scopes."""
        registry = PolicyRegistry(source, max_scopes=100, clock=clock)

        for i in range(500):
            clock.now = float(i)
            await registry.get_candidate_policies(PolicyContext("member-1", f"tenant-{i}", "purchase", timestamp=NOW))
        registry.invalidate_all()

        stats = registry.get_stats()
        assert stats["cached_scopes"] == 100
        assert stats["evictions"] == 400
        assert registry.invalidate_scope("tenant-0") == 0
        assert registry.invalidate_scope("tenant-499") == 1

    @pytest.mark.asyncio
    async def test_expired_scopes_evicted_first(self, source, clock):
        """Test an invalidated scope is evicted before an older fresh one."""
        registry = PolicyRegistry(source, max_scopes=2, clock=clock)

        await registry.get_candidate_policies(PolicyContext("member-1", "tenant-1", "login", timestamp=NOW))
        clock.now = 1.0
        await registry.get_candidate_policies(PolicyContext("member-1", "tenant-1", "purchase", timestamp=NOW))
        registry.invalidate_scope("tenant-1", "purchase")
        clock.now = 2.0
        await registry.get_candidate_policies(PolicyContext("member-1", "tenant-1", "refund", timestamp=NOW))

        assert registry.invalidate_scope("tenant-1", "login") == 1
        assert registry.invalidate_scope("tenant-1", "purchase") == 0
        assert registry.get_stats()["cached_scopes"] == 2
