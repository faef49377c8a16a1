"""
Policy definition schemas for the Rewards Service.

Administrators author policies as JSON or YAML documents. These pydantic
models validate a document when it is loaded and convert it into the frozen
Policy model, so a malformed definition is rejected before any evaluation
sees it.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from shared.errors import PolicyValidationError
from .models import (
    Action, Condition, ConditionOperator, DecimalValue, FlatBonusAction, MultiplierAction, Policy, PolicyState,
    RatePerUnitAction, StackingStrategy, UnlockFlagAction, as_utc, to_decimal,
)


class ConditionDefinition(BaseModel):
    """Condition as authored."""
    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: Any = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def check_value_shape(self):
        if self.operator == ConditionOperator.BETWEEN:
            if not isinstance(self.value, list) or len(self.value) != 2:
                raise ValueError("between requires a two-element [low, high] value")
            low, high = self.value
            if _is_number(low) and _is_number(high) and to_decimal(low) > to_decimal(high):
                raise ValueError("between range must have low <= high")
        if self.operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            if not isinstance(self.value, list):
                raise ValueError(f"{self.operator.value} requires a list value")
        return self

    def to_condition(self) -> Condition:
        return Condition(
            field=self.field,
            operator=self.operator,
            value=self.value,
            description=self.description
        )


class FlatBonusDefinition(BaseModel):
    kind: Literal["flat_bonus"]
    amount: int = Field(..., ge=0)


class MultiplierDefinition(BaseModel):
    kind: Literal["multiplier"]
    factor: DecimalValue = Field(..., ge=1)


class RatePerUnitDefinition(BaseModel):
    kind: Literal["rate_per_unit"]
    rate: DecimalValue = Field(..., ge=0)


class UnlockFlagDefinition(BaseModel):
    kind: Literal["unlock_flag"]
    unlock_id: str = Field(..., min_length=1)


ActionDefinition = Annotated[
    Union[FlatBonusDefinition, MultiplierDefinition, RatePerUnitDefinition, UnlockFlagDefinition],
    Field(discriminator="kind")
]


def _to_action(definition) -> Action:
    if isinstance(definition, FlatBonusDefinition):
        return FlatBonusAction(amount=Decimal(definition.amount))
    if isinstance(definition, MultiplierDefinition):
        return MultiplierAction(factor=to_decimal(definition.factor))
    if isinstance(definition, RatePerUnitDefinition):
        return RatePerUnitAction(rate=to_decimal(definition.rate))
    return UnlockFlagAction(unlock_id=definition.unlock_id)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


class PolicyDefinition(BaseModel):
    """Policy as authored."""
    model_config = ConfigDict(extra="forbid")

    policy_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: int = Field(1, ge=1)
    description: Optional[str] = None
    conditions: List[ConditionDefinition] = Field(default_factory=list)
    actions: List[ActionDefinition] = Field(default_factory=list)
    strategy: StackingStrategy = StackingStrategy.ADDITIVE
    precedence: int = 0
    state: PolicyState = PolicyState.ACTIVE
    tenant_id: Optional[str] = None
    event_types: List[str] = Field(default_factory=list)
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None
    max_contribution: Optional[int] = Field(None, ge=0)
    any_of: List["PolicyDefinition"] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_window(self):
        if self.active_from and self.active_until:
            if as_utc(self.active_from) >= as_utc(self.active_until):
                raise ValueError("active_from must be before active_until")
        return self

    def to_policy(self) -> Policy:
        return Policy(
            policy_id=self.policy_id,
            name=self.name,
            version=self.version,
            description=self.description,
            conditions=tuple(c.to_condition() for c in self.conditions),
            actions=tuple(_to_action(a) for a in self.actions),
            strategy=self.strategy,
            precedence=self.precedence,
            state=self.state,
            tenant_id=self.tenant_id,
            event_types=frozenset(self.event_types),
            active_from=self.active_from,
            active_until=self.active_until,
            max_contribution=self.max_contribution,
            any_of=tuple(branch.to_policy() for branch in self.any_of)
        )


PolicyDefinition.model_rebuild()


class PolicyDocument(BaseModel):
    """A file of policies."""
    policies: List[PolicyDefinition] = Field(default_factory=list)


def validate_policy(policy: Policy) -> Policy:
    """Check the invariants of a top-level policy.

    A top-level policy needs actions of its own, or an OR-group whose every
    branch brings actions, directly or through its own nested branches.
    """
    if not _brings_actions(policy):
        raise PolicyValidationError(
            "Policy must declare at least one action",
            details={"policy_id": policy.policy_id}
        )
    if policy.max_contribution is not None and policy.max_contribution < 0:
        raise PolicyValidationError(
            "max_contribution must not be negative",
            details={"policy_id": policy.policy_id}
        )
    if policy.active_from and policy.active_until and policy.active_from >= policy.active_until:
        raise PolicyValidationError(
            "active_from must be before active_until",
            details={"policy_id": policy.policy_id}
        )
    if policy.version < 1:
        raise PolicyValidationError("version must be >= 1", details={"policy_id": policy.policy_id})
    return policy


def parse_policy(data: Dict[str, Any]) -> Policy:
    """Validate one policy definition and convert it."""
    try:
        definition = PolicyDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise PolicyValidationError(
            "Invalid policy definition",
            details={"policy_id": data.get("policy_id") if isinstance(data, dict) else None,
                     "errors": e.errors(include_url=False, include_context=False, include_input=False)}
        ) from e
    return validate_policy(definition.to_policy())


def parse_policies(items: Iterable[Dict[str, Any]]) -> List[Policy]:
    return [parse_policy(item) for item in items]


def _condition_to_dict(condition: Condition) -> Dict[str, Any]:
    value = condition.value
    if isinstance(value, tuple):
        value = list(value)
    return {
        "field": condition.field,
        "operator": condition.operator.value,
        "value": value,
        "description": condition.description,
    }


def _action_to_dict(action: Action) -> Dict[str, Any]:
    if isinstance(action, FlatBonusAction):
        return {"kind": action.kind.value, "amount": int(action.amount)}
    if isinstance(action, MultiplierAction):
        return {"kind": action.kind.value, "factor": str(action.factor)}
    if isinstance(action, RatePerUnitAction):
        return {"kind": action.kind.value, "rate": str(action.rate)}
    return {"kind": action.kind.value, "unlock_id": action.unlock_id}


def policy_to_dict(policy: Policy) -> Dict[str, Any]:
    """Serialize a policy to a JSON-compatible definition."""
    return {
        "policy_id": policy.policy_id,
        "name": policy.name,
        "version": policy.version,
        "description": policy.description,
        "conditions": [_condition_to_dict(c) for c in policy.conditions],
        "actions": [_action_to_dict(a) for a in policy.actions],
        "strategy": policy.strategy.value,
        "precedence": policy.precedence,
        "state": policy.state.value,
        "tenant_id": policy.tenant_id,
        "event_types": sorted(policy.event_types),
        "active_from": policy.active_from.isoformat() if policy.active_from else None,
        "active_until": policy.active_until.isoformat() if policy.active_until else None,
        "max_contribution": policy.max_contribution,
        "any_of": [policy_to_dict(branch) for branch in policy.any_of],
    }


def _brings_actions(policy: Policy) -> bool:
    if policy.actions:
        return True
    return bool(policy.any_of) and all(_brings_actions(branch) for branch in policy.any_of)
