"""
Condition Store
===============

Flat, content-addressed store of conditions.

GUARANTEES:
- Same content -> same condition_id (idempotent registration)
- Stored conditions are never modified
- Compounds built through `compound` only reference existing conditions
"""

from __future__ import annotations
from typing import Dict, FrozenSet, Iterable, Optional, Sequence, Set
import logging
import threading

import networkx as nx

from ..contracts.conditions import (
    UNARY_OPERATORS, CompoundCondition, Condition, LogicalOperator,
    Operand, OperandKind, Operator, SimpleCondition,
)
from ..errors import NotFoundError, ValidationError
from .operands import FUNCTIONS


logger = logging.getLogger(__name__)


class ConditionStore:

    def __init__(self):
        self._conditions: Dict[str, Condition] = {}
        self._lock = threading.Lock()

    def simple(self, left: Operand, operator: Operator, right: Optional[Operand] = None) -> str:
        if operator in UNARY_OPERATORS and right is not None:
            raise ValidationError(f"{operator.value} takes no right operand")
        if operator not in UNARY_OPERATORS and right is None:
            raise ValidationError(f"{operator.value} requires a right operand")
        for operand in (left, right):
            if operand is not None:
                _check_operand(operand)
        return self.register(SimpleCondition.create(left, operator, right))

    def compound(self, operator: LogicalOperator, children: Sequence[str]) -> str:
        if operator is LogicalOperator.NOT and len(children) != 1:
            raise ValidationError("NOT takes exactly one child condition")
        for child in children:
            if child not in self._conditions:
                raise NotFoundError(f"Condition {child} not found", {"condition_id": child})
        return self.register(CompoundCondition.create(operator, tuple(children)))

    def register(self, condition: Condition) -> str:
        """Store a condition as-is (used for bulk import; no reference checks)."""
        with self._lock:
            if condition.condition_id not in self._conditions:
                self._conditions[condition.condition_id] = condition
                logger.debug("Registered condition %s", condition.condition_id)
        return condition.condition_id

    def get(self, condition_id: str) -> Optional[Condition]:
        return self._conditions.get(condition_id)

    def __contains__(self, condition_id: str) -> bool:
        return condition_id in self._conditions

    def __len__(self) -> int:
        return len(self._conditions)

    # =========================================================================
    # GRAPH QUERIES
    # =========================================================================

    def dependency_graph(self, roots: Iterable[str]) -> nx.DiGraph:
        """
        Directed graph of compound -> child edges reachable from `roots`.

        Unknown ids appear as nodes with attribute missing=True.
        """
        graph = nx.DiGraph()
        pending = list(roots)
        seen: Set[str] = set()
        while pending:
            condition_id = pending.pop()
            if condition_id in seen:
                continue
            seen.add(condition_id)
            condition = self._conditions.get(condition_id)
            graph.add_node(condition_id, missing=condition is None)
            if isinstance(condition, CompoundCondition):
                for child in condition.children:
                    graph.add_edge(condition_id, child)
                    pending.append(child)
        return graph

    def question_refs(self, condition_id: str) -> FrozenSet[str]:
        """Question codes read anywhere below a condition."""
        refs: FrozenSet[str] = frozenset()
        for node in self.dependency_graph([condition_id]).nodes:
            condition = self._conditions.get(node)
            if isinstance(condition, SimpleCondition):
                refs = refs | condition.question_refs()
        return refs


def _check_operand(operand: Operand) -> None:
    if operand.kind is OperandKind.QUESTION and not operand.ref:
        raise ValidationError("Question operand needs a question code")
    if operand.kind is OperandKind.EXPRESSION:
        if operand.function not in FUNCTIONS:
            raise ValidationError(f"Unknown expression function {operand.function!r}")
        for arg in operand.args:
            _check_operand(arg)
