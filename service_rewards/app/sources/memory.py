"""
In-memory policy source with version history.
"""

from dataclasses import replace
from typing import Dict, FrozenSet, List, Optional, Tuple

from shared.errors import PolicyValidationError
from shared.logging import get_logger
from ..policies.definitions import validate_policy
from ..policies.models import Policy, PolicyState


IndexKey = Tuple[Optional[str], Optional[str]]


class InMemoryPolicySource:
    """Policy source backed by process memory.

    Every published version is retained so earlier versions stay available for
    audit replay. Current policies are indexed by (tenant_id, event_type) with
    None standing for a wildcard scope, so a lookup touches at most four
    buckets. With ``indexed=False`` lookups fall back to a full scan.
    """

    def __init__(self, policies: Optional[List[Policy]] = None, indexed: bool = True):
        self.logger = get_logger("rewards.sources.memory")
        self.indexed = indexed
        self._history: Dict[str, List[Policy]] = {}
        self._current: Dict[str, Policy] = {}
        self._index: Dict[IndexKey, Tuple[Policy, ...]] = {}
        for policy in policies or []:
            self.publish(policy)

    def publish(self, policy: Policy) -> Policy:
        """Publish a new policy or a new version of an existing one."""
        validate_policy(policy)
        current = self._current.get(policy.policy_id)
        if current is not None and policy.version <= current.version:
            raise PolicyValidationError(
                "Policy version must increase",
                details={
                    "policy_id": policy.policy_id,
                    "current_version": current.version,
                    "version": policy.version
                }
            )

        self._history.setdefault(policy.policy_id, []).append(policy)
        self._current = {**self._current, policy.policy_id: policy}
        self._rebuild_index()

        self.logger.info(
            "Policy published",
            policy_id=policy.policy_id,
            version=policy.version,
            state=policy.state.value
        )
        return policy

    def archive(self, policy_id: str) -> Optional[Policy]:
        """Publish an ARCHIVED version of a policy."""
        current = self._current.get(policy_id)
        if current is None:
            return None
        return self.publish(replace(current, version=current.version + 1, state=PolicyState.ARCHIVED))

    def get_policy(self, policy_id: str) -> Optional[Policy]:
        return self._current.get(policy_id)

    def history(self, policy_id: str) -> List[Policy]:
        return list(self._history.get(policy_id, []))

    async def get_policy_version(self, policy_id: str, version: int) -> Optional[Policy]:
        for policy in self._history.get(policy_id, []):
            if policy.version == version:
                return policy
        return None

    async def list_active_policies(self, tenant_id: str, event_type: str) -> List[Policy]:
        """Current ACTIVE policies scoped to the tenant and event type."""
        if self.indexed:
            candidates = []
            for key in ((tenant_id, event_type), (tenant_id, None), (None, event_type), (None, None)):
                candidates.extend(self._index.get(key, ()))
        else:
            candidates = [p for p in self._current.values() if p.applies_to(tenant_id, event_type)]

        return [p for p in candidates if p.state == PolicyState.ACTIVE]

    def policy_ids(self) -> FrozenSet[str]:
        return frozenset(self._current)

    def _rebuild_index(self):
        index: Dict[IndexKey, List[Policy]] = {}
        for policy in self._current.values():
            for event_type in policy.event_types or (None,):
                index.setdefault((policy.tenant_id, event_type), []).append(policy)
        # Swap the whole index so concurrent readers never see a partial one
        self._index = {key: tuple(value) for key, value in index.items()}
