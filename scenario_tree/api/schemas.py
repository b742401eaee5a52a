"""
API Request Schemas
===================

Pydantic models for request bodies. Responses are plain dicts built by
the mapper, mirroring the contracts one to one.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..contracts.catalog import OwnerType, QuestionScope, QuestionStatus
from ..contracts.conditions import LogicalOperator, OperandKind, Operator, RulePurpose
from ..contracts.events import ExitDirection
from ..contracts.state import ScenarioType
from ..contracts.tree import NodeKind, TreeType
from ..contracts.values import DataType


# =============================================================================
# CATALOG
# =============================================================================

class QuestionCreate(BaseModel):
    code: str
    data_type: DataType
    scope: QuestionScope
    owner_id: Optional[str] = None
    owner_type: Optional[OwnerType] = None
    validation_schema: Optional[Dict[str, Any]] = None
    label: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    status: QuestionStatus = QuestionStatus.ACTIVE


class QuestionVersionCreate(BaseModel):
    valid_from: Optional[datetime] = None
    data_type: Optional[DataType] = None
    validation_schema: Optional[Dict[str, Any]] = None
    label: Optional[str] = None


class QuestionDeprecate(BaseModel):
    replacement_id: Optional[str] = None
    reason: Optional[str] = None


class QuestionReason(BaseModel):
    reason: Optional[str] = None


class QuestionRename(BaseModel):
    new_code: str


class LenderCreate(BaseModel):
    name: str
    lender_id: Optional[str] = None


# =============================================================================
# CONDITIONS
# =============================================================================

class OperandIn(BaseModel):
    kind: OperandKind
    ref: Optional[str] = None
    value: Any = None
    function: Optional[str] = None
    args: List["OperandIn"] = Field(default_factory=list)


OperandIn.model_rebuild()


class SimpleConditionCreate(BaseModel):
    left: OperandIn
    operator: Operator
    right: Optional[OperandIn] = None


class CompoundConditionCreate(BaseModel):
    operator: LogicalOperator
    children: List[str] = Field(default_factory=list)


# =============================================================================
# TREES
# =============================================================================

class TreeCreate(BaseModel):
    name: str
    tree_type: TreeType = TreeType.TENANT


class RuleIn(BaseModel):
    purpose: RulePurpose
    condition_id: str
    priority: int = 0
    stop_on_match: bool = False
    is_active: bool = True
    action: Optional[str] = None


class NodeCreate(BaseModel):
    kind: NodeKind
    parent_id: Optional[str] = None
    question_id: Optional[str] = None
    order_key: Optional[Decimal] = None
    stage: Optional[str] = None
    display_config: Dict[str, Any] = Field(default_factory=dict)
    always_visible: bool = False
    always_required: bool = False
    rules: List[RuleIn] = Field(default_factory=list)


class NodeMove(BaseModel):
    after_id: Optional[str] = None
    before_id: Optional[str] = None


# =============================================================================
# SCENARIOS
# =============================================================================

class ScenarioStart(BaseModel):
    tree_id: str
    scenario_type: ScenarioType = ScenarioType.APPLICATION
    scenario_id: Optional[str] = None
    external_id: Optional[str] = None
    family_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    valid_at: Optional[datetime] = None


class AnswerIn(BaseModel):
    node_id: str
    value: Any
    valid_at: Optional[datetime] = None
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class ImportIn(BaseModel):
    answers: Dict[str, Any]


class NodeRef(BaseModel):
    node_id: str


class NodeExit(BaseModel):
    node_id: str
    direction: ExitDirection = ExitDirection.FORWARD


class CancelIn(BaseModel):
    reason: str


class CompleteIn(BaseModel):
    confirmation: Dict[str, Any] = Field(default_factory=dict)


class ExternalDataIn(BaseModel):
    source: str
    data: Dict[str, Any]


class FamilyLink(BaseModel):
    family_id: str

