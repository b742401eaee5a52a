"""
Navigation Engine
=================

Decides, for every node of a scenario's tree, whether it is visible,
whether it is required, and which conditions are holding it back.

GUARANTEES:
===========
1. Same nodes + same answers + same reference date -> same availability
2. A node with no active VISIBILITY rule (or always_visible) is visible
3. A hidden ancestor hides all of its descendants
4. Hidden nodes are never required
5. Never raises for bad rule data: condition evaluation is total

RULE CHAINS:
============
Active rules of one purpose run in priority order and are AND-combined.
A rule flagged stop_on_match that evaluates True ends its chain.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import date
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple
import logging

from ..conditions.engine import ConditionEngine, EvaluationContext
from ..contracts.catalog import Question
from ..contracts.conditions import NodeRule, RulePurpose
from ..contracts.state import NavigationState, NodeAvailability, Projection
from ..contracts.tree import NodeKind, TreeNode
from ..contracts.values import AnswerValue
from ..temporal.projector import progress_of


logger = logging.getLogger(__name__)


def evaluation_context(projection: Projection, today: Optional[date] = None) -> EvaluationContext:
    """
    Conditions read every current answer, including answers to nodes that
    are hidden right now. Hiding never erases what was said.
    """
    answers: Dict[str, AnswerValue] = {
        code: answer.value for code, answer in projection.answers_by_code().items()
    }
    return EvaluationContext(answers=answers, today=today)


class NavigationEngine:

    def __init__(self, conditions: ConditionEngine):
        self._conditions = conditions

    def evaluate(
        self,
        nodes: Sequence[TreeNode],
        projection: Projection,
        questions: Optional[Mapping[str, Question]] = None,
        today: Optional[date] = None,
    ) -> Tuple[NodeAvailability, ...]:
        """
        Availability of every node, in the order given.

        `nodes` must list parents before children (TreeStore.nodes does).
        `questions` maps question_id -> Question to report question codes.
        """
        context = evaluation_context(projection, today)
        answered_ids = {a.question_id for a in projection.answers}
        invalid_ids = {a.question_id for a in projection.answers if not a.is_valid}
        questions = questions or {}
        hidden_by: Dict[str, Tuple[str, ...]] = {}
        result: List[NodeAvailability] = []

        for node in nodes:
            inherited = hidden_by.get(node.parent_id) if node.parent_id else None
            if inherited is not None:
                visible, blocking = False, inherited
            else:
                visible, blocking = self._visibility(node, context)
            if not visible:
                hidden_by[node.node_id] = blocking

            required = visible and self._requirement(node, context)
            result.append(NodeAvailability(
                node_id=node.node_id,
                kind=node.kind.value,
                visible=visible,
                required=required,
                answered=node.question_id is not None and node.question_id in answered_ids,
                question_id=node.question_id,
                question_code=_code_of(node, questions, projection),
                stage=node.stage,
                parent_id=node.parent_id,
                blocking_conditions=blocking,
                valid=node.question_id not in invalid_ids,
            ))
        logger.debug(
            "Availability for %s v%d: %d of %d node(s) visible",
            projection.scenario_id, projection.version, sum(1 for a in result if a.visible), len(result),
        )
        return tuple(result)

    def _visibility(self, node: TreeNode, context: EvaluationContext) -> Tuple[bool, Tuple[str, ...]]:
        if node.behavior.always_visible:
            return (True, ())
        return self._chain(node.rules_for(RulePurpose.VISIBILITY), context)

    def _requirement(self, node: TreeNode, context: EvaluationContext) -> bool:
        if node.behavior.always_required:
            return True
        rules = node.rules_for(RulePurpose.REQUIREMENT)
        if not rules:
            return False
        required, _ = self._chain(rules, context)
        return required

    def _chain(self, rules: Sequence[NodeRule], context: EvaluationContext) -> Tuple[bool, Tuple[str, ...]]:
        """AND over the chain; returns (result, ids of the rules that failed)."""
        failed: List[str] = []
        for rule in rules:
            if not self._conditions.evaluate(rule.condition_id, context):
                failed.append(rule.condition_id)
            elif rule.stop_on_match:
                break
        return (not failed, tuple(failed))

    def failed_validations(self, node: TreeNode, projection: Projection, today: Optional[date] = None) -> Tuple[NodeRule, ...]:
        """VALIDATION rules of a node that do not hold for the current answers."""
        context = evaluation_context(projection, today)
        failed: List[NodeRule] = []
        for rule in node.rules_for(RulePurpose.VALIDATION):
            if not self._conditions.evaluate(rule.condition_id, context):
                failed.append(rule)
            elif rule.stop_on_match:
                break
        return tuple(failed)


def _code_of(node: TreeNode, questions: Mapping[str, Question], projection: Projection) -> Optional[str]:
    if node.question_id is None:
        return None
    question = questions.get(node.question_id)
    if question is not None:
        return question.code
    answer = projection.answer_for(node.question_id)
    return answer.question_code if answer is not None else None


# =============================================================================
# SUMMARY
# =============================================================================

def summarize(navigation: NavigationState, availability: Sequence[NodeAvailability]) -> NavigationState:
    """
    Fold availability into the navigation state: available/blocked ids and
    question counts over VISIBLE question nodes.
    """
    questions = [a for a in availability if a.kind == NodeKind.QUESTION.value and a.visible]
    answered = sum(1 for a in questions if a.answered)
    return replace(
        navigation,
        available=tuple(a.node_id for a in availability if a.visible),
        blocked=tuple(a.node_id for a in availability if not a.visible),
        total_questions=len(questions),
        answered_questions=answered,
        progress=progress_of(answered, len(questions)),
    )


def missing_required(availability: Sequence[NodeAvailability]) -> Tuple[NodeAvailability, ...]:
    """Visible, required and still unanswered."""
    return tuple(a for a in availability if a.visible and a.required and not a.answered)


def open_requirements(availability: Sequence[NodeAvailability]) -> Tuple[str, ...]:
    """
    Why the visible, required questions do not yet hold: `required: <code>`
    for unanswered ones, `invalid: <code>` for answers that failed a
    VALIDATION rule.
    """
    problems: List[str] = []
    for a in availability:
        if not (a.visible and a.required):
            continue
        label = a.question_code or a.node_id
        if not a.answered:
            problems.append(f"required: {label}")
        elif not a.valid:
            problems.append(f"invalid: {label}")
    return tuple(problems)


def hidden_question_ids(availability: Sequence[NodeAvailability]) -> FrozenSet[str]:
    """
    Questions whose every node is hidden. A question placed on several
    nodes stays live while any of them is visible.
    """
    visible = {a.question_id for a in availability if a.question_id and a.visible}
    return frozenset(a.question_id for a in availability if a.question_id and a.question_id not in visible)
