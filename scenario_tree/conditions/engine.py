"""
Condition Engine
================

Pure, total boolean evaluation of stored conditions.

GUARANTEES:
===========
1. evaluate() never raises: unknown, malformed or cyclic conditions
   evaluate to False and are logged as warnings
2. Missing operands make comparisons False; NOT_EXISTS is True
3. AND([]) = True, OR([]) = False, NOT negates its single child,
   XOR is True when exactly one child is True
4. Same store + same context -> same result (no clock reads)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple
import logging
import re

from ..contracts.conditions import (
    CompoundCondition, LogicalOperator, Operator, SimpleCondition,
)
from ..contracts.values import AnswerValue, DateValue, NumberValue, TextValue, ValueKind
from .operands import OperandError, as_values, resolve
from .store import ConditionStore


logger = logging.getLogger(__name__)


class ConditionFault(ValueError):
    """A stored condition is unknown, malformed or cyclic."""
    pass


@dataclass(frozen=True)
class EvaluationContext:
    """
    Inputs of an evaluation: current answers by question code and the
    reference date for WITHIN_DAYS.
    """
    answers: Mapping[str, AnswerValue] = field(default_factory=dict, hash=False)
    today: Optional[date] = None


class ConditionEngine:

    def __init__(self, store: ConditionStore, max_depth: int = 64):
        self._store = store
        self._max_depth = max_depth

    @property
    def store(self) -> ConditionStore:
        return self._store

    def evaluate(self, condition_id: str, context: EvaluationContext) -> bool:
        try:
            return self._evaluate(condition_id, context, frozenset())
        except (ValueError, TypeError, AttributeError, LookupError, ArithmeticError, re.error, RecursionError) as exc:
            logger.warning("Condition %s evaluated as false: %s", condition_id, exc)
            return False

    def failing(self, condition_ids: Iterable[str], context: EvaluationContext) -> Tuple[str, ...]:
        """The ids, in input order, that evaluate to False."""
        return tuple(cid for cid in condition_ids if not self.evaluate(cid, context))

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _evaluate(self, condition_id: str, context: EvaluationContext, path: FrozenSet[str]) -> bool:
        if condition_id in path:
            raise ConditionFault(f"cycle through {condition_id}")
        if len(path) >= self._max_depth:
            raise ConditionFault(f"nesting deeper than {self._max_depth}")
        condition = self._store.get(condition_id)
        if condition is None:
            raise ConditionFault(f"unknown condition {condition_id}")

        if isinstance(condition, CompoundCondition):
            return self._compound(condition, context, path | {condition_id})
        return _compare(condition, context)

    def _compound(self, condition: CompoundCondition, context: EvaluationContext, path: FrozenSet[str]) -> bool:
        children = condition.children
        op = condition.operator
        if op is LogicalOperator.AND:
            return all(self._evaluate(c, context, path) for c in children)
        if op is LogicalOperator.OR:
            return any(self._evaluate(c, context, path) for c in children)
        if op is LogicalOperator.NOT:
            if len(children) != 1:
                raise ConditionFault(f"NOT with {len(children)} children")
            return not self._evaluate(children[0], context, path)
        # XOR
        return sum(1 for c in children if self._evaluate(c, context, path)) == 1


# =============================================================================
# COMPARISONS
# =============================================================================

def _compare(condition: SimpleCondition, context: EvaluationContext) -> bool:
    op = condition.operator
    left = resolve(condition.left, context.answers)

    if op is Operator.EXISTS:
        return left is not None
    if op is Operator.NOT_EXISTS:
        return left is None

    if condition.right is None:
        raise ConditionFault(f"{op.value} without right operand")
    right = resolve(condition.right, context.answers)
    if left is None or right is None:
        return False

    if op is Operator.EQ:
        return _equal(left, right)
    if op is Operator.NEQ:
        return not _equal(left, right)
    if op in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE):
        a, b = _ordered_pair(left, right)
        if op is Operator.GT:
            return a > b
        if op is Operator.GTE:
            return a >= b
        if op is Operator.LT:
            return a < b
        return a <= b
    if op in (Operator.IN, Operator.NOT_IN):
        options = as_values(right)
        members = as_values(left)
        found = all(any(_equal(m, o) for o in options) for m in members)
        return found if op is Operator.IN else not found
    if op in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        found = _contains(left, right)
        return found if op is Operator.CONTAINS else not found
    if op in (Operator.MATCHES, Operator.NOT_MATCHES):
        if left.kind is not ValueKind.TEXT or right.kind is not ValueKind.TEXT:
            raise TypeError("MATCHES needs text operands")
        found = re.search(right.value, left.value) is not None
        return found if op is Operator.MATCHES else not found
    if op in (Operator.BETWEEN, Operator.OUTSIDE):
        bounds = as_values(right)
        if len(bounds) != 2:
            raise ConditionFault(f"{op.value} expects [low, high]")
        low, _ = _ordered_pair(bounds[0], left)
        value, high = _ordered_pair(left, bounds[1])
        inside = low <= value <= high
        return inside if op is Operator.BETWEEN else not inside
    if op is Operator.WITHIN_DAYS:
        if context.today is None:
            raise ConditionFault("WITHIN_DAYS needs a reference date")
        if left.kind is not ValueKind.DATE or right.kind is not ValueKind.NUMBER:
            raise TypeError("WITHIN_DAYS needs a date and a number of days")
        return abs((context.today - left.value).days) <= right.value
    raise ConditionFault(f"unsupported operator {op.value}")


def _align(left: AnswerValue, right: AnswerValue) -> Tuple[AnswerValue, AnswerValue]:
    """Bring text to the other side's kind where the text parses as it."""
    if left.kind is right.kind:
        return left, right
    if left.kind is ValueKind.TEXT:
        converted = _from_text(left, right.kind)
        if converted is not None:
            return converted, right
    if right.kind is ValueKind.TEXT:
        converted = _from_text(right, left.kind)
        if converted is not None:
            return left, converted
    return left, right


def _from_text(value: TextValue, kind: ValueKind) -> Optional[AnswerValue]:
    text = value.value.strip()
    if kind is ValueKind.NUMBER:
        try:
            number = Decimal(text)
        except ArithmeticError:
            return None
        return NumberValue(number) if number.is_finite() else None
    if kind is ValueKind.DATE:
        try:
            return DateValue(date.fromisoformat(text[:10]))
        except ValueError:
            return None
    return None


def _equal(left: AnswerValue, right: AnswerValue) -> bool:
    left, right = _align(left, right)
    if left.kind is not right.kind:
        return False
    return left.value == right.value


def _ordered_pair(left: AnswerValue, right: AnswerValue):
    left, right = _align(left, right)
    if left.kind is not right.kind or left.kind in (ValueKind.BOOL, ValueKind.JSON):
        raise TypeError(f"cannot order {left.kind.value} against {right.kind.value}")
    return left.value, right.value


def _contains(left: AnswerValue, right: AnswerValue) -> bool:
    if left.kind is ValueKind.TEXT:
        if right.kind is not ValueKind.TEXT:
            raise TypeError("text CONTAINS needs a text operand")
        return right.value in left.value
    if left.kind is ValueKind.JSON:
        if isinstance(left.value, dict):
            return right.kind is ValueKind.TEXT and right.value in left.value
        return any(_equal(item, right) for item in as_values(left))
    raise TypeError(f"CONTAINS is undefined for {left.kind.value}")
