"""
Stacking and conflict resolution for the Rewards Service.

The combination rule is:

    total = additive_sum
          + exclusive_winner
          + trunc(base * product(multiplicative factors) - base)

* EXCLUSIVE: only the highest-precedence policy counts; ties go to the
  lexically smallest policy id. The rest are excluded with
  ``exclusive_group_superseded``.
* ADDITIVE: every member's value is summed.
* MULTIPLICATIVE: members' factors are folded by product and applied to the
  base once, so compounding multipliers never apply against each other's
  output. Flat and rate points of members are added as-is.

An ADDITIVE or EXCLUSIVE policy carrying a MULTIPLIER action has nothing to
compose with, so its factor is applied on its own: ``trunc(base * (m - 1))``,
capped at the policy's remaining max_contribution allowance.
"""

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar

from .calculator import ONE, truncate
from .models import (
    BreakdownEntry, Contribution, ContributionType, ExcludedPolicy, ExclusionReason, StackingStrategy,
)


T = TypeVar("T")


def precedence_order(item) -> Tuple[int, str]:
    """Sort key: precedence descending, then policy id ascending."""
    return (-item.precedence, item.policy_id)


def multiplicative_bonus(base_amount: Optional[Decimal], product: Decimal) -> int:
    if base_amount is None:
        return 0
    return truncate(base_amount * product - base_amount)


def reconstruct_total(breakdown: Iterable[BreakdownEntry], base_amount: Optional[Decimal]) -> int:
    """Rebuild a result's total from its breakdown alone."""
    total = 0
    product = ONE
    has_multiplicative = False
    for entry in breakdown:
        total += entry.value
        if (entry.contribution_type == ContributionType.MULTIPLIER
                and entry.strategy == StackingStrategy.MULTIPLICATIVE):
            product *= entry.factor
            has_multiplicative = True
    if has_multiplicative:
        total += multiplicative_bonus(base_amount, product)
    return total


@dataclass(frozen=True)
class Resolution:
    """Outcome of stacking resolution."""
    total: int
    applied_ids: Tuple[str, ...]
    excluded: Tuple[ExcludedPolicy, ...]
    breakdown: Tuple[BreakdownEntry, ...]
    additive_total: int = 0
    exclusive_total: int = 0
    multiplicative_total: int = 0


class StackingResolver:
    """Combines matched contributions under their declared strategies."""

    def select_exclusive(self, items: Sequence[T]) -> Tuple[Optional[T], List[T]]:
        """Pick the single winner of an exclusive group.

        Also serves as the OR-resolver for ``any_of`` branches.
        """
        if not items:
            return None, []
        ordered = sorted(items, key=precedence_order)
        return ordered[0], ordered[1:]

    def standalone_value(self, contribution: Contribution, base_amount: Optional[Decimal]) -> int:
        """Value of a non-multiplicative contribution, multiplier included."""
        return contribution.points + self._standalone_bonus(contribution, base_amount)

    def resolve(
        self,
        contributions: Iterable[Contribution],
        base_amount: Optional[Decimal]
    ) -> Resolution:
        """Resolve matched contributions into a final total."""
        ordered = sorted(contributions, key=precedence_order)
        if not ordered:
            return Resolution(total=0, applied_ids=(), excluded=(), breakdown=())

        exclusive = [c for c in ordered if c.strategy == StackingStrategy.EXCLUSIVE]
        winner, superseded = self.select_exclusive(exclusive)
        superseded_ids = {c.policy_id for c in superseded}

        additive_total = 0
        exclusive_total = 0
        multiplicative_points = 0
        product = ONE
        has_multiplicative = False

        applied: List[str] = []
        breakdown: List[BreakdownEntry] = []

        for contribution in ordered:
            if contribution.policy_id in superseded_ids:
                continue

            if contribution.strategy == StackingStrategy.MULTIPLICATIVE:
                multiplicative_points += contribution.points
                product *= contribution.multiplier
                has_multiplicative = True
                entries = contribution.entries
            else:
                bonus = self._standalone_bonus(contribution, base_amount)
                entries = tuple(
                    replace(entry, value=bonus) if entry.contribution_type == ContributionType.MULTIPLIER else entry
                    for entry in contribution.entries
                )
                if contribution.strategy == StackingStrategy.EXCLUSIVE:
                    exclusive_total = contribution.points + bonus
                else:
                    additive_total += contribution.points + bonus

            applied.append(contribution.policy_id)
            breakdown.extend(entries)

        multiplicative_total = multiplicative_points
        if has_multiplicative:
            multiplicative_total += multiplicative_bonus(base_amount, product)

        excluded = tuple(
            ExcludedPolicy(
                policy_id=c.policy_id,
                reason=ExclusionReason.EXCLUSIVE_GROUP_SUPERSEDED,
                detail=f"superseded by {winner.policy_id}"
            )
            for c in superseded
        )

        return Resolution(
            total=additive_total + exclusive_total + multiplicative_total,
            applied_ids=tuple(applied),
            excluded=excluded,
            breakdown=tuple(breakdown),
            additive_total=additive_total,
            exclusive_total=exclusive_total,
            multiplicative_total=multiplicative_total
        )

    @staticmethod
    def _standalone_bonus(contribution: Contribution, base_amount: Optional[Decimal]) -> int:
        if contribution.multiplier == ONE or base_amount is None:
            return 0
        bonus = truncate(base_amount * (contribution.multiplier - ONE))
        if contribution.allowance is not None:
            bonus = min(bonus, contribution.allowance)
        return bonus
