"""
Scenario Tree Contracts
=======================

Versioned trees of question/group nodes.

INVARIANTS:
- node_id is derived from node content (tree, parent, kind, question,
  stage, configs, rules). Sibling position is NOT content.
- A QUESTION node always references a question; a GROUP node never does.
- A published tree is immutable; edits go to a new version.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .base import content_hash
from .conditions import NodeRule, RulePurpose


class NodeKind(Enum):
    QUESTION = "QUESTION"
    GROUP = "GROUP"
    SECTION = "SECTION"
    COMPUTED = "COMPUTED"
    EXTERNAL = "EXTERNAL"


# Kinds whose node must reference a question / must not
KINDS_WITH_QUESTION = frozenset({NodeKind.QUESTION})
KINDS_WITHOUT_QUESTION = frozenset({NodeKind.GROUP})


class TreeType(Enum):
    MASTER = "MASTER"
    TENANT = "TENANT"
    USER = "USER"


class ValidationStatus(Enum):
    PENDING = "PENDING"
    VALID = "VALID"
    INVALID = "INVALID"
    WARNING = "WARNING"


@dataclass(frozen=True)
class BehaviorConfig:
    always_visible: bool = False
    always_required: bool = False

    def to_content(self) -> Dict[str, Any]:
        return {"always_visible": self.always_visible, "always_required": self.always_required}


@dataclass(frozen=True)
class TreeNode:
    node_id: str
    tree_id: str
    kind: NodeKind
    order_key: Decimal
    parent_id: Optional[str] = None
    question_id: Optional[str] = None
    stage: Optional[str] = None
    display_config: Dict[str, Any] = field(default_factory=dict, hash=False)
    behavior: BehaviorConfig = field(default_factory=BehaviorConfig)
    rules: Tuple[NodeRule, ...] = ()

    @staticmethod
    def content_of(
        tree_id: str,
        kind: NodeKind,
        parent_id: Optional[str],
        question_id: Optional[str],
        stage: Optional[str],
        display_config: Dict[str, Any],
        behavior: BehaviorConfig,
        rules: Tuple[NodeRule, ...],
    ) -> Dict[str, Any]:
        return {
            "tree_id": tree_id,
            "kind": kind.value,
            "parent_id": parent_id,
            "question_id": question_id,
            "stage": stage,
            "display_config": display_config,
            "behavior": behavior.to_content(),
            "rules": sorted(
                (r.to_content() for r in rules),
                key=lambda c: (c["purpose"], c["priority"], c["condition_id"]),
            ),
        }

    @staticmethod
    def node_id_for(content: Dict[str, Any]) -> str:
        return f"node_{content_hash(content)[:24]}"

    @property
    def content(self) -> Dict[str, Any]:
        return TreeNode.content_of(
            self.tree_id, self.kind, self.parent_id, self.question_id,
            self.stage, self.display_config, self.behavior, self.rules,
        )

    @property
    def node_hash(self) -> str:
        return content_hash(self.content)

    def rules_for(self, purpose: RulePurpose) -> Tuple[NodeRule, ...]:
        """Active rules of one purpose in evaluation order."""
        return tuple(sorted(
            (r for r in self.rules if r.purpose is purpose and r.is_active),
            key=lambda r: r.priority,
        ))


@dataclass(frozen=True)
class ValidationIssue:
    severity: str  # "ERROR" | "WARNING"
    code: str
    message: str
    node_id: Optional[str] = None


@dataclass(frozen=True)
class ValidationReport:
    tree_id: str
    issues: Tuple[ValidationIssue, ...] = ()

    @property
    def errors(self) -> Tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == "ERROR")

    @property
    def warnings(self) -> Tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == "WARNING")

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def status(self) -> ValidationStatus:
        if self.errors:
            return ValidationStatus.INVALID
        if self.warnings:
            return ValidationStatus.WARNING
        return ValidationStatus.VALID


@dataclass(frozen=True)
class Tree:
    tree_id: str
    tenant_id: str
    name: str
    tree_type: TreeType
    version: int
    created_by: str
    created_at: datetime
    parent_tree_id: Optional[str] = None
    is_published: bool = False
    tree_hash: Optional[str] = None
    published_at: Optional[datetime] = None
    validation_status: ValidationStatus = ValidationStatus.PENDING
    validation_report: Optional[ValidationReport] = None
