"""
Reward calculation for the Rewards Service.
"""

from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional, Sequence

from shared.errors import InvalidActionError
from .models import (
    Policy, PolicyContext, Contribution, BreakdownEntry, ContributionType, StackingStrategy,
    FlatBonusAction, MultiplierAction, RatePerUnitAction, UnlockFlagAction,
)


ONE = Decimal(1)

# Multiplier caps are rounded down to this step so base * (cap - 1) never
# exceeds the remaining allowance.
_FACTOR_STEP = Decimal("0.000001")


def truncate(value: Decimal) -> int:
    """Truncate toward zero."""
    return int(value)


class RewardCalculator:
    """Turns a matched policy's actions into a Contribution."""

    def compute_contribution(
        self,
        policy: Policy,
        context: PolicyContext,
        branches: Sequence[Policy] = ()
    ) -> Contribution:
        """Compute a policy's contribution. Call only after its conditions matched.

        ``branches`` is the selected OR-branch path, outermost first. Every
        branch on it adds its actions and the innermost id is reported.
        """
        actions = policy.actions + tuple(a for branch in branches for a in branch.actions)
        if not actions:
            raise self._invalid(policy, "Policy declares no actions")

        base = context.amount
        branch_id = branches[-1].policy_id if branches else None
        points = 0
        multiplier = ONE
        has_multiplier = False
        unlocks: List[str] = []
        entries: List[BreakdownEntry] = []

        for action in actions:
            if isinstance(action, FlatBonusAction):
                if action.amount < 0:
                    raise self._invalid(policy, "Flat bonus must not be negative", amount=str(action.amount))
                value = truncate(action.amount)
                points += value
                entries.append(self._entry(policy, ContributionType.FLAT_BONUS, value, branch_id))

            elif isinstance(action, RatePerUnitAction):
                if action.rate < 0:
                    raise self._invalid(policy, "Rate must not be negative", rate=str(action.rate))
                if base is None:
                    value = 0
                elif base < 0:
                    raise self._invalid(policy, "Rate applied to a negative amount", amount=str(base))
                else:
                    value = truncate(base * action.rate)
                points += value
                entries.append(self._entry(policy, ContributionType.RATE_PER_UNIT, value, branch_id))

            elif isinstance(action, MultiplierAction):
                if action.factor < ONE:
                    raise self._invalid(policy, "Multiplier below 1 yields a negative contribution", factor=str(action.factor))
                if base is not None and base < 0:
                    raise self._invalid(policy, "Multiplier applied to a negative amount", amount=str(base))
                multiplier *= action.factor
                has_multiplier = True

            elif isinstance(action, UnlockFlagAction):
                if not action.unlock_id:
                    raise self._invalid(policy, "Unlock flag requires an unlock id")
                unlocks.append(action.unlock_id)
                entries.append(self._entry(policy, ContributionType.UNLOCK, 0, branch_id, unlock_id=action.unlock_id))

            else:
                raise self._invalid(policy, f"Unsupported action {type(action).__name__}")

        allowance = None
        if policy.max_contribution is not None:
            if policy.max_contribution < 0:
                raise self._invalid(policy, "max_contribution must not be negative")
            if points > policy.max_contribution:
                entries.append(self._entry(
                    policy, ContributionType.CLAMP, policy.max_contribution - points, branch_id
                ))
                points = policy.max_contribution
            allowance = policy.max_contribution - points
            if has_multiplier and policy.strategy == StackingStrategy.MULTIPLICATIVE:
                multiplier = self._cap_factor(multiplier, allowance, base)

        if has_multiplier:
            # Value is settled by the resolver
            entries.append(self._entry(policy, ContributionType.MULTIPLIER, 0, branch_id, factor=multiplier))

        return Contribution(
            policy_id=policy.policy_id,
            version=policy.version,
            strategy=policy.strategy,
            precedence=policy.precedence,
            points=points,
            multiplier=multiplier,
            allowance=allowance,
            unlocks=tuple(unlocks),
            entries=tuple(entries),
            branch_id=branch_id
        )

    @staticmethod
    def _cap_factor(multiplier: Decimal, allowance: int, base: Optional[Decimal]) -> Decimal:
        if base is None or base <= 0:
            return multiplier
        cap = ONE + (Decimal(allowance) / base).quantize(_FACTOR_STEP, rounding=ROUND_FLOOR)
        return min(multiplier, cap)

    @staticmethod
    def _entry(policy: Policy, contribution_type: ContributionType, value: int,
               branch_id: Optional[str], **extra) -> BreakdownEntry:
        return BreakdownEntry(
            policy_id=policy.policy_id,
            contribution_type=contribution_type,
            value=value,
            strategy=policy.strategy,
            branch_id=branch_id,
            **extra
        )

    @staticmethod
    def _invalid(policy: Policy, reason: str, **details) -> InvalidActionError:
        return InvalidActionError(reason, details={"policy_id": policy.policy_id, **details})
