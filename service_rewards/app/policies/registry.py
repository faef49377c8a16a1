"""
Policy registry for the Rewards Service.

The registry is a read-through cache in front of a policy source, keyed by
(tenant_id, event_type). The entry map is copy-on-write: every change builds
a new dict and swaps it in, so an evaluation that already holds a snapshot
tuple never observes a partially updated policy set.

Freshness is checked when a lookup happens (TTL against the entry's fetch
time) or forced by an explicit invalidation signal. No background timer
touches the cache. The map is bounded; past ``max_scopes`` the entries
fetched longest ago are evicted, expired ones first.
"""

import asyncio
import heapq
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Protocol, Tuple

from shared.errors import RegistryUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .models import Policy, PolicyContext
from .resolver import precedence_order


CacheKey = Tuple[str, str]

_EXPIRED = float("-inf")


class PolicySource(Protocol):
    """External store of policies."""

    async def list_active_policies(self, tenant_id: str, event_type: str) -> Iterable[Policy]:
        ...


@dataclass(frozen=True)
class _CacheEntry:
    policies: Tuple[Policy, ...]
    fetched_at: float
    policy_ids: FrozenSet[str]


def _latest_versions(policies: Iterable[Policy]) -> Tuple[Policy, ...]:
    latest: Dict[str, Policy] = {}
    for policy in policies:
        current = latest.get(policy.policy_id)
        if current is None or policy.version > current.version:
            latest[policy.policy_id] = policy
    return tuple(sorted(latest.values(), key=precedence_order))


class PolicyRegistry:
    """Read-through cached lookup of candidate policies."""

    def __init__(
        self,
        source: PolicySource,
        ttl_seconds: float = 60.0,
        fetch_timeout_seconds: float = 2.0,
        max_scopes: int = 10000,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.source = source
        self.ttl_seconds = ttl_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.max_scopes = max_scopes
        self.metrics = metrics
        self.logger = get_logger("rewards.registry")
        self._clock = clock
        self._entries: Dict[CacheKey, _CacheEntry] = {}
        self._generation = 0
        self._stats = {"hits": 0, "misses": 0, "stale_served": 0, "fetch_failures": 0, "evictions": 0}

    async def get_candidate_policies(self, context: PolicyContext) -> Tuple[Policy, ...]:
        """ACTIVE policies in scope whose window contains context.timestamp.

        Conditions are not evaluated here. The result is ordered by
        precedence descending, then policy id.
        """
        key = (context.tenant_id, context.event_type)
        entry = self._entries.get(key)

        if entry is not None and self._clock() - entry.fetched_at < self.ttl_seconds:
            self._record("hits", "hit")
        else:
            self._record("misses", "miss")
            entry = await self._refresh(key, entry)

        return tuple(p for p in entry.policies if p.is_active_at(context.timestamp))

    async def _refresh(self, key: CacheKey, stale: Optional[_CacheEntry]) -> _CacheEntry:
        tenant_id, event_type = key
        generation = self._generation

        try:
            fetched = await asyncio.wait_for(
                self.source.list_active_policies(tenant_id, event_type),
                timeout=self.fetch_timeout_seconds
            )
        except Exception as e:
            self._record("fetch_failures", "fetch_failure")
            reason = "timeout" if isinstance(e, asyncio.TimeoutError) else str(e)
            if stale is not None:
                self._record("stale_served", "stale")
                self.logger.warning(
                    "Policy source unavailable, serving stale policies",
                    tenant_id=tenant_id,
                    event_type=event_type,
                    reason=reason
                )
                return stale
            self.logger.error(
                "Policy source unavailable and no cached policies",
                tenant_id=tenant_id,
                event_type=event_type,
                reason=reason
            )
            raise RegistryUnavailableError(
                details={"tenant_id": tenant_id, "event_type": event_type, "reason": reason}
            ) from e

        policies = _latest_versions(p for p in fetched if p.applies_to(tenant_id, event_type))
        ids: FrozenSet[str] = frozenset()
        for policy in policies:
            ids |= policy.all_policy_ids()
        entry = _CacheEntry(policies=policies, fetched_at=self._clock(), policy_ids=ids)

        # An invalidation during the fetch wins; the fetched set may predate it
        if generation == self._generation:
            self._entries = self._bounded({**self._entries, key: entry})
        else:
            self.logger.debug("Discarding fetch that raced an invalidation", tenant_id=tenant_id, event_type=event_type)

        self.logger.debug("Policies fetched", tenant_id=tenant_id, event_type=event_type, count=len(policies))
        return entry

    def _bounded(self, entries: Dict[CacheKey, _CacheEntry]) -> Dict[CacheKey, _CacheEntry]:
        overflow = len(entries) - self.max_scopes
        if overflow <= 0:
            return entries
        evicted = heapq.nsmallest(overflow, entries, key=lambda k: entries[k].fetched_at)
        for key in evicted:
            del entries[key]
        self._stats["evictions"] += overflow
        self.logger.debug("Evicted cached policy scopes", scopes=overflow)
        return entries

    def invalidate(self, policy_id: str) -> int:
        """Expire every cached scope that contains the policy."""
        return self._expire(lambda key, entry: policy_id in entry.policy_ids, policy_id=policy_id)

    def invalidate_scope(self, tenant_id: Optional[str], event_type: Optional[str] = None) -> int:
        """Expire cached scopes matching tenant and event type; None matches any."""
        return self._expire(
            lambda key, entry: (tenant_id is None or key[0] == tenant_id)
            and (event_type is None or key[1] == event_type),
            tenant_id=tenant_id,
            event_type=event_type
        )

    def invalidate_all(self) -> int:
        return self._expire(lambda key, entry: True)

    def clear(self):
        """Drop every entry, including the stale fallback copies."""
        self._generation += 1
        self._entries = {}

    def _expire(self, predicate: Callable[[CacheKey, _CacheEntry], bool], **log_fields: Any) -> int:
        # Expired entries stay as stale fallback; they are replaced, not edited
        self._generation += 1
        count = 0
        entries = {}
        for key, entry in self._entries.items():
            if predicate(key, entry):
                entry = replace(entry, fetched_at=_EXPIRED)
                count += 1
            entries[key] = entry
        self._entries = entries

        self.logger.info("Policy cache invalidated", scopes=count, **log_fields)
        return count

    def _record(self, stat: str, result: str):
        self._stats[stat] += 1
        if self.metrics is not None:
            self.metrics.increment_counter("policy_cache_lookups_total", result=result)

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics."""
        entries = self._entries
        now = self._clock()
        return {
            "cached_scopes": len(entries),
            "fresh_scopes": len([e for e in entries.values() if now - e.fetched_at < self.ttl_seconds]),
            "cached_policies": len(frozenset().union(*(e.policy_ids for e in entries.values()))),
            "ttl_seconds": self.ttl_seconds,
            "fetch_timeout_seconds": self.fetch_timeout_seconds,
            "max_scopes": self.max_scopes,
            **self._stats
        }
