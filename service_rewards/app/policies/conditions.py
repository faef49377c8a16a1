"""
Condition evaluation for the Rewards Service.
"""

from collections.abc import Mapping, Sequence, Set
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from shared.errors import MalformedConditionError
from .models import Condition, ConditionOperator, PolicyContext, as_utc, to_decimal


_MISSING = object()

# Context fields reachable by name when attributes do not shadow them
_CONTEXT_FIELDS = ("actor_id", "tenant_id", "event_type", "amount", "timestamp")

_ORDERING_OPERATORS = {
    ConditionOperator.GREATER_THAN: lambda a, b: a > b,
    ConditionOperator.LESS_THAN: lambda a, b: a < b,
    ConditionOperator.GREATER_OR_EQUAL: lambda a, b: a >= b,
    ConditionOperator.LESS_OR_EQUAL: lambda a, b: a <= b,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_collection(value: Any) -> bool:
    return isinstance(value, (Sequence, Set)) and not isinstance(value, (str, bytes))


def resolve_field(path: str, context: PolicyContext) -> Any:
    """Resolve a dot-path against the context.

    Attributes are searched first (flat key, then nested mappings); the
    context's own fields are the fallback. Returns ``_MISSING`` when the path
    does not resolve or resolves to None.
    """
    if path.startswith("attributes."):
        path = path[len("attributes."):]

    attributes = context.attributes
    if path in attributes:
        value = attributes[path]
        return _MISSING if value is None else value

    value: Any = attributes
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            value = _MISSING
            break

    if value is _MISSING and path in _CONTEXT_FIELDS:
        value = getattr(context, path)

    return _MISSING if value is None else value


class ConditionEvaluator:
    """Pure evaluator for policy conditions."""

    def evaluate(self, condition: Condition, context: PolicyContext) -> bool:
        """Evaluate one condition. Absent fields never match."""
        actual = resolve_field(condition.field, context)
        if actual is _MISSING:
            return False

        operator = condition.operator
        expected = condition.value

        if operator == ConditionOperator.EQUALS:
            return self._equals(actual, expected)

        if operator == ConditionOperator.NOT_EQUALS:
            return not self._equals(actual, expected)

        if operator in _ORDERING_OPERATORS:
            left, right = self._comparable_pair(condition, actual, expected)
            return _ORDERING_OPERATORS[operator](left, right)

        if operator == ConditionOperator.BETWEEN:
            if not _is_collection(expected) or len(expected) != 2:
                raise self._malformed(condition, "BETWEEN requires a two-element range")
            low_value, high_value = expected
            value, low = self._comparable_pair(condition, actual, low_value)
            _, high = self._comparable_pair(condition, actual, high_value)
            return low <= value <= high

        if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            if not _is_collection(expected):
                raise self._malformed(condition, f"{operator.name} requires a list value")
            found = any(self._equals(actual, candidate) for candidate in expected)
            return found if operator == ConditionOperator.IN else not found

        if operator == ConditionOperator.CONTAINS:
            if isinstance(actual, str):
                if not isinstance(expected, str):
                    raise self._malformed(condition, "CONTAINS on a string field requires a string value")
                return expected in actual
            if _is_collection(actual):
                return any(self._equals(item, expected) for item in actual)
            raise self._malformed(condition, "CONTAINS requires a string or collection field")

        raise self._malformed(condition, f"Unknown operator {operator!r}")

    def evaluate_all(self, conditions: Iterable[Condition], context: PolicyContext) -> bool:
        """Short-circuit AND; an empty list is an unconditional match."""
        for condition in conditions:
            if not self.evaluate(condition, context):
                return False
        return True

    def _equals(self, actual: Any, expected: Any) -> bool:
        if _is_number(actual) and _is_number(expected):
            return to_decimal(actual) == to_decimal(expected)
        if isinstance(actual, datetime) and isinstance(expected, (datetime, str)):
            try:
                return as_utc(actual) == self._to_datetime(expected)
            except ValueError:
                return False
        return actual == expected

    def _comparable_pair(self, condition: Condition, actual: Any, expected: Any):
        """Coerce both sides to one ordered type or raise MalformedConditionError."""
        if _is_number(actual) and _is_number(expected):
            try:
                left, right = to_decimal(actual), to_decimal(expected)
            except InvalidOperation as e:
                raise self._malformed(condition, str(e)) from e
            if left.is_nan() or right.is_nan():
                raise self._malformed(condition, f"{condition.operator.name} cannot order NaN")
            return left, right

        if isinstance(actual, datetime) and isinstance(expected, (datetime, str)):
            try:
                return as_utc(actual), self._to_datetime(expected)
            except ValueError as e:
                raise self._malformed(condition, f"Unparseable timestamp {expected!r}") from e

        # ISO-8601 strings on both sides order as timestamps
        if isinstance(actual, str) and isinstance(expected, str):
            try:
                return self._to_datetime(actual), self._to_datetime(expected)
            except ValueError:
                pass

        raise self._malformed(
            condition,
            f"{condition.operator.name} cannot compare {type(actual).__name__} with {type(expected).__name__}"
        )

    @staticmethod
    def _to_datetime(value: Any) -> datetime:
        if isinstance(value, datetime):
            return as_utc(value)
        return as_utc(datetime.fromisoformat(value))

    @staticmethod
    def _malformed(condition: Condition, reason: str) -> MalformedConditionError:
        return MalformedConditionError(
            reason,
            details={"field": condition.field, "operator": condition.operator.value}
        )
