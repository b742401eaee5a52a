"""
Condition Contracts
===================

Content-addressed rule conditions.

A condition is either SIMPLE (left operand, comparison operator, optional
right operand) or COMPOUND (logical operator over child condition ids).
Conditions never change: editing a rule produces a new condition id.

INVARIANTS:
- condition_id is derived from content only
- Compound conditions reference children by id (flat store, no nesting)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from .base import content_hash
from .values import AnswerValue, from_plain, to_record


class Operator(Enum):
    """Comparison operators of a simple condition."""
    EQ = "EQ"
    NEQ = "NEQ"
    GT = "GT"
    GTE = "GTE"
    LT = "LT"
    LTE = "LTE"
    IN = "IN"
    NOT_IN = "NOT_IN"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    MATCHES = "MATCHES"
    NOT_MATCHES = "NOT_MATCHES"
    EXISTS = "EXISTS"
    NOT_EXISTS = "NOT_EXISTS"
    BETWEEN = "BETWEEN"
    OUTSIDE = "OUTSIDE"
    WITHIN_DAYS = "WITHIN_DAYS"


# Operators that take no right operand
UNARY_OPERATORS: FrozenSet[Operator] = frozenset({Operator.EXISTS, Operator.NOT_EXISTS})


class LogicalOperator(Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"
    XOR = "XOR"


class OperandKind(Enum):
    QUESTION = "question"
    LITERAL = "literal"
    EXPRESSION = "expression"


@dataclass(frozen=True)
class Operand:
    """
    One side of a comparison.

    QUESTION operands name a question by code; LITERAL operands carry a
    tagged value; EXPRESSION operands apply a named function to operands.
    """
    kind: OperandKind
    ref: Optional[str] = None
    literal: Optional[AnswerValue] = field(default=None, hash=False)
    function: Optional[str] = None
    args: Tuple["Operand", ...] = ()

    @staticmethod
    def question(code: str) -> Operand:
        return Operand(kind=OperandKind.QUESTION, ref=code)

    @staticmethod
    def of(raw: Any) -> Operand:
        """Literal operand from a plain value."""
        return Operand(kind=OperandKind.LITERAL, literal=from_plain(raw))

    @staticmethod
    def expression(function: str, *args: Operand) -> Operand:
        return Operand(kind=OperandKind.EXPRESSION, function=function, args=tuple(args))

    def to_content(self) -> Dict[str, Any]:
        if self.kind is OperandKind.QUESTION:
            return {"kind": self.kind.value, "ref": self.ref}
        if self.kind is OperandKind.LITERAL:
            return {
                "kind": self.kind.value,
                "value": to_record(self.literal) if self.literal is not None else None,
            }
        return {
            "kind": self.kind.value,
            "function": self.function,
            "args": [a.to_content() for a in self.args],
        }

    def question_refs(self) -> FrozenSet[str]:
        """Question codes this operand reads."""
        if self.kind is OperandKind.QUESTION:
            return frozenset({self.ref}) if self.ref else frozenset()
        refs: FrozenSet[str] = frozenset()
        for arg in self.args:
            refs = refs | arg.question_refs()
        return refs


@dataclass(frozen=True)
class SimpleCondition:
    condition_id: str
    left: Operand
    operator: Operator
    right: Optional[Operand] = None

    @staticmethod
    def content_of(left: Operand, operator: Operator, right: Optional[Operand]) -> Dict[str, Any]:
        return {
            "type": "simple",
            "left": left.to_content(),
            "operator": operator.value,
            "right": right.to_content() if right is not None else None,
        }

    @staticmethod
    def create(left: Operand, operator: Operator, right: Optional[Operand] = None) -> SimpleCondition:
        content = SimpleCondition.content_of(left, operator, right)
        return SimpleCondition(
            condition_id=condition_id_for(content),
            left=left,
            operator=operator,
            right=right,
        )

    def question_refs(self) -> FrozenSet[str]:
        refs = self.left.question_refs()
        if self.right is not None:
            refs = refs | self.right.question_refs()
        return refs


@dataclass(frozen=True)
class CompoundCondition:
    condition_id: str
    operator: LogicalOperator
    children: Tuple[str, ...] = ()

    @staticmethod
    def create(operator: LogicalOperator, children: Tuple[str, ...]) -> CompoundCondition:
        # AND/OR/XOR are commutative: children are hashed in sorted order
        ordered = tuple(children) if operator is LogicalOperator.NOT else tuple(sorted(children))
        content = {"type": "compound", "operator": operator.value, "children": list(ordered)}
        return CompoundCondition(
            condition_id=condition_id_for(content),
            operator=operator,
            children=ordered,
        )


Condition = Union[SimpleCondition, CompoundCondition]


def condition_id_for(content: Dict[str, Any]) -> str:
    return f"cond_{content_hash(content)[:24]}"


# =============================================================================
# NODE RULES
# =============================================================================

class RulePurpose(Enum):
    VISIBILITY = "VISIBILITY"
    REQUIREMENT = "REQUIREMENT"
    VALIDATION = "VALIDATION"
    COMPUTATION = "COMPUTATION"
    SIDE_EFFECT = "SIDE_EFFECT"


@dataclass(frozen=True)
class NodeRule:
    """
    Attaches a condition to a node for one purpose.

    Rules of the same purpose are evaluated in ascending priority.
    `action` is free text for VALIDATION (the message shown on failure)
    and for COMPUTATION/SIDE_EFFECT rules.
    """
    purpose: RulePurpose
    condition_id: str
    priority: int = 0
    stop_on_match: bool = False
    is_active: bool = True
    action: Optional[str] = None

    def to_content(self) -> Dict[str, Any]:
        return {
            "purpose": self.purpose.value,
            "condition_id": self.condition_id,
            "priority": self.priority,
            "stop_on_match": self.stop_on_match,
            "is_active": self.is_active,
            "action": self.action,
        }
