"""
Derived Scenario State
======================

Everything in this module is DERIVED from the event log by projection.
None of it is stored authoritatively; it can be rebuilt at any time.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .base import Error, ValidityWindow, content_hash
from .events import AnswerSource
from .values import AnswerValue, to_record


class ScenarioStatus(Enum):
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_open(self) -> bool:
        """Open scenarios still accept answers."""
        return self in (ScenarioStatus.DRAFT, ScenarioStatus.IN_PROGRESS)

    @property
    def is_terminal(self) -> bool:
        return self in (ScenarioStatus.COMPLETED, ScenarioStatus.CANCELLED)


class ScenarioType(Enum):
    APPLICATION = "APPLICATION"
    PREVIEW = "PREVIEW"
    SIMULATION = "SIMULATION"
    TEMPLATE = "TEMPLATE"


@dataclass(frozen=True)
class Answer:
    question_id: str
    question_code: str
    node_id: str
    value: AnswerValue = field(hash=False)
    source: AnswerSource
    provided_by: str
    event_id: str
    sequence: int
    valid_from: datetime
    recorded_at: datetime
    is_valid: bool = True
    validation_errors: Tuple[str, ...] = ()

    def to_content(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "question_code": self.question_code,
            "node_id": self.node_id,
            "value": to_record(self.value),
            "source": self.source.value,
            "provided_by": self.provided_by,
            "event_id": self.event_id,
            "sequence": self.sequence,
            "valid_from": self.valid_from.isoformat(),
            "recorded_at": self.recorded_at.isoformat(),
            "is_valid": self.is_valid,
            "validation_errors": list(self.validation_errors),
        }


@dataclass(frozen=True)
class AnswerHistoryEntry:
    """
    A superseded (or cleared) answer value.

    `validity` is the real-world period the value was in force;
    recorded_from/recorded_to is the system period the log believed it.
    """
    question_id: str
    question_code: str
    node_id: str
    value: AnswerValue = field(hash=False)
    source: AnswerSource
    provided_by: str
    validity: ValidityWindow
    recorded_from: datetime
    recorded_to: datetime
    event_id: str
    closed_by_event_id: str
    sequence: int = 0
    change_reason: Optional[str] = None

    def to_content(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "question_code": self.question_code,
            "node_id": self.node_id,
            "value": to_record(self.value),
            "source": self.source.value,
            "valid_from": self.validity.valid_from.isoformat(),
            "valid_to": self.validity.valid_to.isoformat(),
            "recorded_from": self.recorded_from.isoformat(),
            "recorded_to": self.recorded_to.isoformat(),
            "event_id": self.event_id,
            "closed_by_event_id": self.closed_by_event_id,
            "sequence": self.sequence,
            "change_reason": self.change_reason,
        }


@dataclass(frozen=True)
class NavigationState:
    current_node_id: Optional[str] = None
    current_stage: Optional[str] = None
    visited: Tuple[str, ...] = ()
    completed: Tuple[str, ...] = ()
    available: Tuple[str, ...] = ()
    blocked: Tuple[str, ...] = ()
    completed_stages: Tuple[str, ...] = ()
    total_questions: int = 0
    answered_questions: int = 0
    progress: Decimal = Decimal("0.00")

    def to_content(self) -> Dict[str, Any]:
        return {
            "current_node_id": self.current_node_id,
            "current_stage": self.current_stage,
            "visited": list(self.visited),
            "completed": list(self.completed),
            "available": list(self.available),
            "blocked": list(self.blocked),
            "completed_stages": list(self.completed_stages),
            "total_questions": self.total_questions,
            "answered_questions": self.answered_questions,
            "progress": str(self.progress),
        }


@dataclass(frozen=True)
class ExternalData:
    source: str
    data: Dict[str, Any] = field(hash=False)
    event_id: str = ""
    sequence: int = 0


@dataclass(frozen=True)
class Projection:
    """
    State of one scenario after folding its events.

    `version` is the sequence of the last folded event (0 = empty log).
    `errors` lists events that were skipped because they were invalid for
    the state they arrived in.
    """
    scenario_id: str
    version: int = 0
    status: Optional[ScenarioStatus] = None
    tenant_id: Optional[str] = None
    tree_id: Optional[str] = None
    scenario_type: Optional[ScenarioType] = None
    external_id: Optional[str] = None
    family_id: Optional[str] = None
    created_by: Optional[str] = None
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    answers: Tuple[Answer, ...] = ()
    history: Tuple[AnswerHistoryEntry, ...] = ()
    navigation: NavigationState = field(default_factory=NavigationState)
    external_data: Tuple[ExternalData, ...] = ()
    errors: Tuple[Error, ...] = ()

    def answer_for(self, question_id: str) -> Optional[Answer]:
        for answer in self.answers:
            if answer.question_id == question_id:
                return answer
        return None

    def answers_by_code(self) -> Dict[str, Answer]:
        return {a.question_code: a for a in self.answers}

    def to_content(self) -> Dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "version": self.version,
            "status": self.status.value if self.status else None,
            "tree_id": self.tree_id,
            "family_id": self.family_id,
            "answers": [a.to_content() for a in self.answers],
            "history": [h.to_content() for h in self.history],
            "navigation": self.navigation.to_content(),
            "errors": [(e.code.name, e.message) for e in self.errors],
        }

    @property
    def state_hash(self) -> str:
        """Deterministic hash: same events, same state hash."""
        return content_hash(self.to_content())


@dataclass(frozen=True)
class NodeAvailability:
    node_id: str
    kind: str
    visible: bool
    required: bool
    answered: bool
    question_id: Optional[str] = None
    question_code: Optional[str] = None
    stage: Optional[str] = None
    parent_id: Optional[str] = None
    blocking_conditions: Tuple[str, ...] = ()
    valid: bool = True
