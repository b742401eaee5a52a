"""
API Mapper
==========

Transforms contracts into JSON-ready dicts and request schemas into
contracts. Values are exposed exactly as stored: numbers as strings (no
float rounding), timestamps as ISO-8601.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..contracts.catalog import Lender, Question
from ..contracts.conditions import (
    CompoundCondition, Condition, NodeRule, Operand, OperandKind, SimpleCondition,
)
from ..contracts.events import ScenarioEvent
from ..contracts.state import NodeAvailability, Projection
from ..contracts.tree import Tree, TreeNode, ValidationReport
from ..contracts.values import AnswerValue, to_plain, to_record
from ..scenarios.service import ActionResult
from ..tree.versioning import TreeLineage
from .schemas import OperandIn, RuleIn


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# INBOUND
# =============================================================================

def to_operand(operand: OperandIn) -> Operand:
    if operand.kind is OperandKind.QUESTION:
        return Operand.question(operand.ref)
    if operand.kind is OperandKind.LITERAL:
        return Operand.of(operand.value)
    return Operand.expression(operand.function, *(to_operand(a) for a in operand.args))


def to_rule(rule: RuleIn) -> NodeRule:
    return NodeRule(
        purpose=rule.purpose,
        condition_id=rule.condition_id,
        priority=rule.priority,
        stop_on_match=rule.stop_on_match,
        is_active=rule.is_active,
        action=rule.action,
    )


# =============================================================================
# CATALOG & TREES
# =============================================================================

def map_question(question: Question) -> Dict[str, Any]:
    return {
        "question_id": question.question_id,
        "code": question.code,
        "version": question.version,
        "scope": question.scope.value,
        "data_type": question.data_type.value,
        "status": question.status.value,
        "valid_from": _iso(question.validity.valid_from),
        "valid_to": None if question.validity.is_open else _iso(question.validity.valid_to),
        "owner_id": question.owner_id,
        "owner_type": question.owner_type.value if question.owner_type else None,
        "validation_schema": question.validation_schema,
        "label": question.label,
        "replacement_id": question.replacement_id,
        "status_reason": question.status_reason,
    }


def map_lender(lender: Lender) -> Dict[str, Any]:
    return {
        "lender_id": lender.lender_id,
        "name": lender.name,
        "is_active": lender.is_active,
    }


def map_condition(condition: Condition) -> Dict[str, Any]:
    if isinstance(condition, CompoundCondition):
        return {
            "condition_id": condition.condition_id,
            "type": "compound",
            "operator": condition.operator.value,
            "children": list(condition.children),
        }
    content = SimpleCondition.content_of(condition.left, condition.operator, condition.right)
    content["condition_id"] = condition.condition_id
    return content


def map_report(report: Optional[ValidationReport]) -> Optional[Dict[str, Any]]:
    if report is None:
        return None
    return {
        "tree_id": report.tree_id,
        "status": report.status.value,
        "is_valid": report.is_valid,
        "issues": [
            {
                "severity": issue.severity,
                "code": issue.code,
                "message": issue.message,
                "node_id": issue.node_id,
            }
            for issue in report.issues
        ],
    }


def map_tree(tree: Tree) -> Dict[str, Any]:
    return {
        "tree_id": tree.tree_id,
        "name": tree.name,
        "tree_type": tree.tree_type.value,
        "version": tree.version,
        "parent_tree_id": tree.parent_tree_id,
        "is_published": tree.is_published,
        "tree_hash": tree.tree_hash,
        "created_at": _iso(tree.created_at),
        "published_at": _iso(tree.published_at),
        "validation_status": tree.validation_status.value,
        "validation_report": map_report(tree.validation_report),
    }


def map_node(node: TreeNode) -> Dict[str, Any]:
    return {
        "node_id": node.node_id,
        "tree_id": node.tree_id,
        "kind": node.kind.value,
        "order_key": str(node.order_key),
        "parent_id": node.parent_id,
        "question_id": node.question_id,
        "stage": node.stage,
        "display_config": node.display_config,
        "behavior": node.behavior.to_content(),
        "rules": [rule.to_content() for rule in node.rules],
    }


def map_lineage(lineage: TreeLineage) -> Dict[str, Any]:
    return {
        "versions": [map_tree(tree) for tree in lineage.versions],
        "latest_published": lineage.latest_published.tree_id if lineage.latest_published else None,
    }


# =============================================================================
# SCENARIOS
# =============================================================================

def map_value(value: AnswerValue) -> Dict[str, Any]:
    return to_record(value)


def map_state(projection: Projection) -> Dict[str, Any]:
    nav = projection.navigation
    return {
        "scenario_id": projection.scenario_id,
        "version": projection.version,
        "status": projection.status.value if projection.status else None,
        "tree_id": projection.tree_id,
        "scenario_type": projection.scenario_type.value if projection.scenario_type else None,
        "external_id": projection.external_id,
        "family_id": projection.family_id,
        "created_by": projection.created_by,
        "started_at": _iso(projection.started_at),
        "expires_at": _iso(projection.expires_at),
        "submitted_at": _iso(projection.submitted_at),
        "closed_at": _iso(projection.closed_at),
        "answers": [
            {
                "question_id": a.question_id,
                "question_code": a.question_code,
                "node_id": a.node_id,
                "value": map_value(a.value),
                "source": a.source.value,
                "sequence": a.sequence,
                "valid_from": _iso(a.valid_from),
                "recorded_at": _iso(a.recorded_at),
                "is_valid": a.is_valid,
                "validation_errors": list(a.validation_errors),
            }
            for a in projection.answers
        ],
        "navigation": nav.to_content(),
        "errors": [
            {"code": e.code.name, "message": e.message, "context": dict(e.context)}
            for e in projection.errors
        ],
        "state_hash": projection.state_hash,
    }


def map_availability(entries: List[NodeAvailability]) -> List[Dict[str, Any]]:
    return [
        {
            "node_id": a.node_id,
            "kind": a.kind,
            "question_id": a.question_id,
            "question_code": a.question_code,
            "stage": a.stage,
            "parent_id": a.parent_id,
            "visible": a.visible,
            "required": a.required,
            "answered": a.answered,
            "valid": a.valid,
            "blocking_conditions": list(a.blocking_conditions),
        }
        for a in entries
    ]


def map_event(event: ScenarioEvent) -> Dict[str, Any]:
    return event.to_record()


def map_action(result: ActionResult) -> Dict[str, Any]:
    return {
        "events": [map_event(e) for e in result.events],
        "state": map_state(result.state),
        "available_nodes": [a.node_id for a in result.availability if a.visible],
    }


def map_feed(feed: Dict[str, AnswerValue]) -> Dict[str, Any]:
    return {code: to_plain(value) for code, value in feed.items()}

