"""
Policy data models for the Rewards Service.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Any, ClassVar, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, BeforeValidator, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_decimal(value: Any) -> Decimal:
    """Convert a number to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a numeric amount")
    if isinstance(value, int):
        return Decimal(value)
    return Decimal(str(value))


# Floats go through str so 0.1 stays 0.1
DecimalValue = Annotated[Decimal, BeforeValidator(lambda v: to_decimal(v) if isinstance(v, float) else v)]


class ConditionOperator(str, Enum):
    """Condition comparison operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"


class ActionKind(str, Enum):
    """Reward action kinds."""
    FLAT_BONUS = "flat_bonus"
    MULTIPLIER = "multiplier"
    RATE_PER_UNIT = "rate_per_unit"
    UNLOCK_FLAG = "unlock_flag"


class StackingStrategy(str, Enum):
    """How simultaneously matching policies combine."""
    EXCLUSIVE = "exclusive"
    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"


class PolicyState(str, Enum):
    """Policy lifecycle states."""
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class ContributionType(str, Enum):
    """Breakdown entry types."""
    FLAT_BONUS = "flat_bonus"
    RATE_PER_UNIT = "rate_per_unit"
    MULTIPLIER = "multiplier"
    UNLOCK = "unlock"
    CLAMP = "max_contribution_clamp"


class ExclusionReason(str, Enum):
    """Why a matched policy is missing from the applied list."""
    EXCLUSIVE_GROUP_SUPERSEDED = "exclusive_group_superseded"
    MALFORMED_CONDITION = "malformed_condition"
    INVALID_ACTION = "invalid_action"
    EVALUATION_ERROR = "evaluation_error"


@dataclass(frozen=True)
class Condition:
    """A predicate over one context field."""
    field: str
    operator: ConditionOperator
    value: Any = None
    description: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.value, list):
            object.__setattr__(self, "value", tuple(self.value))


@dataclass(frozen=True)
class FlatBonusAction:
    amount: Decimal
    kind: ClassVar[ActionKind] = ActionKind.FLAT_BONUS


@dataclass(frozen=True)
class MultiplierAction:
    factor: Decimal
    kind: ClassVar[ActionKind] = ActionKind.MULTIPLIER


@dataclass(frozen=True)
class RatePerUnitAction:
    rate: Decimal
    kind: ClassVar[ActionKind] = ActionKind.RATE_PER_UNIT


@dataclass(frozen=True)
class UnlockFlagAction:
    unlock_id: str
    kind: ClassVar[ActionKind] = ActionKind.UNLOCK_FLAG


Action = Union[FlatBonusAction, MultiplierAction, RatePerUnitAction, UnlockFlagAction]


@dataclass(frozen=True)
class Policy:
    """A versioned reward rule.

    Policies are immutable; an update publishes a new version. ``tenant_id``
    and ``event_types`` are the coarse scope the registry indexes on (None or
    empty means every tenant / every event type). ``any_of`` holds nested
    sub-policies forming an OR-group: the policy matches when its own
    conditions hold and at least one branch's conditions hold.
    """
    policy_id: str
    name: str
    actions: Tuple[Action, ...] = ()
    conditions: Tuple[Condition, ...] = ()
    version: int = 1
    strategy: StackingStrategy = StackingStrategy.ADDITIVE
    precedence: int = 0
    state: PolicyState = PolicyState.ACTIVE
    tenant_id: Optional[str] = None
    event_types: FrozenSet[str] = frozenset()
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    max_contribution: Optional[int] = None
    any_of: Tuple["Policy", ...] = ()
    description: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "actions", tuple(self.actions))
        object.__setattr__(self, "conditions", tuple(self.conditions))
        object.__setattr__(self, "any_of", tuple(self.any_of))
        object.__setattr__(self, "event_types", frozenset(self.event_types))
        if self.active_from is not None:
            object.__setattr__(self, "active_from", as_utc(self.active_from))
        if self.active_until is not None:
            object.__setattr__(self, "active_until", as_utc(self.active_until))

    def is_active_at(self, timestamp: datetime) -> bool:
        """True when ACTIVE and the window [active_from, active_until) holds timestamp."""
        if self.state != PolicyState.ACTIVE:
            return False
        timestamp = as_utc(timestamp)
        if self.active_from is not None and timestamp < self.active_from:
            return False
        if self.active_until is not None and timestamp >= self.active_until:
            return False
        return True

    def applies_to(self, tenant_id: str, event_type: str) -> bool:
        if self.tenant_id is not None and self.tenant_id != tenant_id:
            return False
        if self.event_types and event_type not in self.event_types:
            return False
        return True

    def all_policy_ids(self) -> FrozenSet[str]:
        """This policy's id plus the ids of every nested branch."""
        ids = {self.policy_id}
        for branch in self.any_of:
            ids |= branch.all_policy_ids()
        return frozenset(ids)


@dataclass(frozen=True)
class PolicyContext:
    """Input snapshot for one evaluation."""
    actor_id: str
    tenant_id: str
    event_type: str
    amount: Optional[Decimal] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.amount is not None:
            object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "attributes", MappingProxyType(copy.deepcopy(dict(self.attributes))))
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))


@dataclass(frozen=True)
class BreakdownEntry:
    """One auditable line of an evaluation result."""
    policy_id: str
    contribution_type: ContributionType
    value: int
    strategy: StackingStrategy
    factor: Optional[Decimal] = None
    unlock_id: Optional[str] = None
    branch_id: Optional[str] = None


@dataclass(frozen=True)
class Contribution:
    """A matched policy's effect before stacking resolution.

    ``points`` already includes flat and rate actions clamped at the policy's
    max_contribution. ``multiplier`` is the product of its MULTIPLIER actions,
    left for the resolver to apply. ``allowance`` is what max_contribution
    still permits on top of ``points`` (None when unbounded).
    """
    policy_id: str
    version: int
    strategy: StackingStrategy
    precedence: int
    points: int = 0
    multiplier: Decimal = Decimal(1)
    allowance: Optional[int] = None
    unlocks: Tuple[str, ...] = ()
    entries: Tuple[BreakdownEntry, ...] = ()
    branch_id: Optional[str] = None


@dataclass(frozen=True)
class ExcludedPolicy:
    policy_id: str
    reason: ExclusionReason
    detail: Optional[str] = None


@dataclass(frozen=True)
class EvaluationResult:
    """Result of one evaluation, handed to the ledger collaborator."""
    total: int
    breakdown: Tuple[BreakdownEntry, ...] = ()
    applied_policy_ids: Tuple[str, ...] = ()
    excluded: Tuple[ExcludedPolicy, ...] = ()
    unlocks: Tuple[str, ...] = ()
    snapshot_versions: Mapping[str, int] = field(default_factory=dict)
    evaluation_time_ms: float = field(default=0.0, compare=False)

    @property
    def excluded_policy_ids(self) -> Tuple[str, ...]:
        return tuple(item.policy_id for item in self.excluded)


# API schemas

class EvaluateRequest(BaseModel):
    """Request model for a reward evaluation."""
    actor_id: str = Field(..., description="Actor (member) ID")
    tenant_id: str = Field(..., description="Tenant ID")
    event_type: str = Field(..., description="Business event type, e.g. purchase")
    amount: Optional[DecimalValue] = Field(None, description="Event amount")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Named event attributes")
    timestamp: Optional[datetime] = Field(None, description="Evaluation timestamp, defaults to now")
    transaction_id: Optional[str] = Field(None, description="Caller transaction ID, echoed for ledger idempotency")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Evaluation deadline in seconds")

    def to_context(self) -> PolicyContext:
        return PolicyContext(
            actor_id=self.actor_id,
            tenant_id=self.tenant_id,
            event_type=self.event_type,
            amount=self.amount,
            attributes=self.attributes,
            timestamp=self.timestamp or utc_now()
        )


class BreakdownEntryResponse(BaseModel):
    policy_id: str
    contribution_type: ContributionType
    value: int
    strategy: StackingStrategy
    factor: Optional[Decimal] = None
    unlock_id: Optional[str] = None
    branch_id: Optional[str] = None


class ExcludedPolicyResponse(BaseModel):
    policy_id: str
    reason: ExclusionReason
    detail: Optional[str] = None


class EvaluateResponse(BaseModel):
    """Response model for a reward evaluation."""
    transaction_id: Optional[str] = None
    total: int
    breakdown: List[BreakdownEntryResponse] = Field(default_factory=list)
    applied_policy_ids: List[str] = Field(default_factory=list)
    excluded: List[ExcludedPolicyResponse] = Field(default_factory=list)
    unlocks: List[str] = Field(default_factory=list)
    snapshot_versions: Dict[str, int] = Field(default_factory=dict)
    evaluation_time_ms: float = 0.0

    @classmethod
    def from_result(cls, result: EvaluationResult, transaction_id: Optional[str] = None) -> "EvaluateResponse":
        return cls(
            transaction_id=transaction_id,
            total=result.total,
            breakdown=[
                BreakdownEntryResponse(
                    policy_id=entry.policy_id,
                    contribution_type=entry.contribution_type,
                    value=entry.value,
                    strategy=entry.strategy,
                    factor=entry.factor,
                    unlock_id=entry.unlock_id,
                    branch_id=entry.branch_id
                )
                for entry in result.breakdown
            ],
            applied_policy_ids=list(result.applied_policy_ids),
            excluded=[
                ExcludedPolicyResponse(policy_id=item.policy_id, reason=item.reason, detail=item.detail)
                for item in result.excluded
            ],
            unlocks=list(result.unlocks),
            snapshot_versions=dict(result.snapshot_versions),
            evaluation_time_ms=result.evaluation_time_ms
        )
