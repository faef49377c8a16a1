"""
Reward evaluation engine for the Rewards Service.
"""

import asyncio
import time
from typing import Iterable, List, Optional, Tuple

from shared.errors import (
    EvaluationTimeoutError, InvalidActionError, MalformedConditionError, RegistryUnavailableError,
)
from shared.logging import get_logger, set_evaluation_context
from shared.metrics import MetricsCollector
from .calculator import RewardCalculator
from .conditions import ConditionEvaluator
from .models import (
    Contribution, EvaluationResult, ExcludedPolicy, ExclusionReason, Policy, PolicyContext,
)
from .registry import PolicyRegistry
from .resolver import StackingResolver


class PolicyEngine:
    """Evaluates a context against the registry's candidate policies.

    The engine keeps no per-evaluation state on itself, so one instance can
    serve many concurrent evaluations. A policy that fails (malformed
    condition, invalid action, or any other error) is excluded with its
    reason and never aborts the rest of the evaluation.
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        evaluator: Optional[ConditionEvaluator] = None,
        calculator: Optional[RewardCalculator] = None,
        resolver: Optional[StackingResolver] = None,
        metrics: Optional[MetricsCollector] = None,
        default_timeout: Optional[float] = None
    ):
        self.registry = registry
        self.evaluator = evaluator or ConditionEvaluator()
        self.calculator = calculator or RewardCalculator()
        self.resolver = resolver or StackingResolver()
        self.metrics = metrics
        self.default_timeout = default_timeout
        self.logger = get_logger("rewards.engine")

    async def evaluate(self, context: PolicyContext, timeout: Optional[float] = None) -> EvaluationResult:
        """Evaluate a context and return an auditable result.

        Raises RegistryUnavailableError when no policies can be loaded and
        EvaluationTimeoutError when the deadline passes.
        """
        set_evaluation_context(actor_id=context.actor_id, tenant_id=context.tenant_id)
        timeout = timeout if timeout is not None else self.default_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None
        start_time = time.monotonic()

        try:
            fetch = self.registry.get_candidate_policies(context)
            if deadline is None:
                candidates = await fetch
            else:
                try:
                    candidates = await asyncio.wait_for(fetch, timeout=max(deadline - time.monotonic(), 0))
                except asyncio.TimeoutError as e:
                    raise EvaluationTimeoutError(details={"stage": "policy_lookup", "timeout_seconds": timeout}) from e

            result = self.evaluate_snapshot(context, candidates, deadline=deadline)

        except EvaluationTimeoutError:
            self._record_outcome("timeout", start_time)
            self.logger.warning("Evaluation deadline exceeded", event_type=context.event_type, timeout_seconds=timeout)
            raise
        except RegistryUnavailableError:
            self._record_outcome("registry_unavailable", start_time)
            raise

        self._record_outcome("ok", start_time)
        for item in result.excluded:
            if self.metrics is not None:
                self.metrics.increment_counter("policies_excluded_total", reason=item.reason.value)

        self.logger.info(
            "Evaluation completed",
            event_type=context.event_type,
            amount=context.amount,
            candidates=len(candidates),
            total=result.total,
            applied=len(result.applied_policy_ids),
            excluded=len(result.excluded),
            evaluation_time_ms=result.evaluation_time_ms
        )
        return result

    def evaluate_snapshot(
        self,
        context: PolicyContext,
        policies: Iterable[Policy],
        deadline: Optional[float] = None
    ) -> EvaluationResult:
        """Evaluate against a fixed set of policies.

        Every given policy is considered as-is; eligibility filtering is the
        registry's job. Used directly for audit replay of archived versions.
        ``deadline`` is a ``time.monotonic()`` value checked between policies.
        """
        start_time = time.perf_counter()
        contributions: List[Contribution] = []
        failed: List[ExcludedPolicy] = []
        versions = {}

        for policy in policies:
            if deadline is not None and time.monotonic() >= deadline:
                raise EvaluationTimeoutError(details={"stage": "policy_evaluation", "policy_id": policy.policy_id})

            versions[policy.policy_id] = policy.version
            try:
                matched, path = self._match(policy, context)
                if matched:
                    contributions.append(self.calculator.compute_contribution(policy, context, path))
            except MalformedConditionError as e:
                failed.append(self._exclude(policy, ExclusionReason.MALFORMED_CONDITION, e.message))
            except InvalidActionError as e:
                failed.append(self._exclude(policy, ExclusionReason.INVALID_ACTION, e.message))
            except Exception as e:
                self.logger.error("Unexpected policy failure", policy_id=policy.policy_id, exc_info=True)
                failed.append(self._exclude(policy, ExclusionReason.EVALUATION_ERROR, str(e)))

        resolution = self.resolver.resolve(contributions, context.amount)

        unlocks: List[str] = []
        applied = set(resolution.applied_ids)
        for contribution in contributions:
            if contribution.policy_id in applied:
                unlocks.extend(u for u in contribution.unlocks if u not in unlocks)

        return EvaluationResult(
            total=resolution.total,
            breakdown=resolution.breakdown,
            applied_policy_ids=resolution.applied_ids,
            excluded=resolution.excluded + tuple(failed),
            unlocks=tuple(unlocks),
            snapshot_versions=versions,
            evaluation_time_ms=(time.perf_counter() - start_time) * 1000
        )

    def _match(self, policy: Policy, context: PolicyContext) -> Tuple[bool, Tuple[Policy, ...]]:
        """Match a policy and pick its OR-branch path, outermost branch first."""
        if not self.evaluator.evaluate_all(policy.conditions, context):
            return False, ()
        if not policy.any_of:
            return True, ()

        paths = {}
        for branch in policy.any_of:
            matched, path = self._match(branch, context)
            if matched:
                paths[branch.policy_id] = (branch,) + path
        branch, _ = self.resolver.select_exclusive([b for b in policy.any_of if b.policy_id in paths])
        if branch is None:
            return False, ()
        return True, paths[branch.policy_id]

    def _exclude(self, policy: Policy, reason: ExclusionReason, detail: str) -> ExcludedPolicy:
        self.logger.warning(
            "Policy excluded from evaluation",
            policy_id=policy.policy_id,
            version=policy.version,
            reason=reason.value,
            detail=detail
        )
        return ExcludedPolicy(policy_id=policy.policy_id, reason=reason, detail=detail)

    def _record_outcome(self, outcome: str, start_time: float):
        if self.metrics is None:
            return
        self.metrics.increment_counter("reward_evaluations_total", outcome=outcome)
        self.metrics.observe_histogram("reward_evaluation_duration_seconds", time.monotonic() - start_time)
