"""
State Projector
===============

Pure left fold from scenario events to a Projection.

    project(events) == fold(apply, events, empty(scenario_id))

INVARIANTS:
- Same events (same order) -> identical Projection and state_hash
- No clock reads, no I/O, no randomness
- Status changes come ONLY from events
- An event that is invalid for the state it arrives in is skipped and
  recorded in Projection.errors; the fold never raises for it
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from ..contracts.base import Error, ErrorCode, ValidityWindow, utc
from ..contracts.events import AnswerSource, EventType, ExitDirection, ScenarioEvent
from ..contracts.state import (
    Answer, AnswerHistoryEntry, ExternalData, Projection,
    ScenarioStatus, ScenarioType,
)
from ..contracts.tree import NodeKind, TreeNode
from ..contracts.values import from_record


OPEN = frozenset({ScenarioStatus.DRAFT, ScenarioStatus.IN_PROGRESS})
NOT_TERMINAL = frozenset({ScenarioStatus.DRAFT, ScenarioStatus.IN_PROGRESS, ScenarioStatus.SUBMITTED})
ANY_STATUS = frozenset(ScenarioStatus)

# Statuses in which each event type may be applied
ALLOWED_IN: Dict[EventType, FrozenSet[ScenarioStatus]] = {
    EventType.NODE_ENTERED: OPEN,
    EventType.NODE_EXITED: OPEN,
    EventType.ANSWER_PROVIDED: OPEN,
    EventType.ANSWER_CLEARED: OPEN,
    EventType.VALIDATION_FAILED: OPEN,
    EventType.VALIDATION_PASSED: OPEN,
    EventType.STAGE_COMPLETED: OPEN,
    EventType.SCENARIO_SUBMITTED: frozenset({ScenarioStatus.IN_PROGRESS}),
    EventType.SCENARIO_COMPLETED: frozenset({ScenarioStatus.SUBMITTED}),
    EventType.SCENARIO_CANCELLED: NOT_TERMINAL,
    EventType.EXTERNAL_DATA_RECEIVED: NOT_TERMINAL,
    EventType.FAMILY_LINKED: ANY_STATUS,
}


def allowed(event_type: EventType, status: Optional[ScenarioStatus]) -> bool:
    """Whether an event of this type may be applied in this status."""
    if event_type is EventType.SCENARIO_STARTED:
        return status is None
    return status is not None and status in ALLOWED_IN[event_type]


class ProjectionFault(ValueError):
    """An event cannot be applied to the current projection."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code


# =============================================================================
# TREE INDEX
# =============================================================================

class TreeIndex:
    """
    Read-only view of a tree's nodes used to resolve stages and count
    questions. Optional: without it, node references are not checked.
    """

    def __init__(self, nodes: Sequence[TreeNode]):
        self._nodes: Dict[str, TreeNode] = {n.node_id: n for n in nodes}
        self._question_nodes = tuple(n for n in nodes if n.kind is NodeKind.QUESTION)

    def get(self, node_id: str) -> Optional[TreeNode]:
        return self._nodes.get(node_id)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    @property
    def question_nodes(self) -> Tuple[TreeNode, ...]:
        return self._question_nodes


def empty(scenario_id: str) -> Projection:
    return Projection(scenario_id=scenario_id)


def project(events: Iterable[ScenarioEvent], tree: Optional[TreeIndex] = None, scenario_id: Optional[str] = None) -> Projection:
    events = tuple(events)
    sid = scenario_id or (events[0].scenario_id if events else "")
    projection = empty(sid)
    for event in events:
        projection = apply(projection, event, tree)
    return projection


def apply(projection: Projection, event: ScenarioEvent, tree: Optional[TreeIndex] = None) -> Projection:
    """Single fold step. Never raises for invalid events: they are recorded."""
    advanced = replace(projection, version=event.sequence)
    if not allowed(event.event_type, projection.status):
        state = projection.status.value if projection.status else "NOT_STARTED"
        return _skip(advanced, event, ErrorCode.INVALID_STATE_TRANSITION,
                     f"{event.event_type.value} is not allowed in {state}")
    try:
        return _with_counts(_HANDLERS[event.event_type](advanced, event, tree), tree)
    except ProjectionFault as fault:
        return _skip(advanced, event, fault.code, str(fault))
    except (KeyError, TypeError, ValueError) as exc:
        return _skip(advanced, event, ErrorCode.VALIDATION_FAILED, f"Malformed payload: {exc}")


def _skip(projection: Projection, event: ScenarioEvent, code: ErrorCode, message: str) -> Projection:
    error = Error(
        code=code,
        message=message,
        timestamp=event.recorded_at,
        context=(
            ("event_id", event.event_id),
            ("event_type", event.event_type.value),
            ("sequence", str(event.sequence)),
        ),
    )
    return replace(projection, errors=projection.errors + (error,))


# =============================================================================
# HANDLERS
# =============================================================================

def _started(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    payload = e.payload
    expires_at = payload.get("expires_at")
    return replace(
        p,
        scenario_id=e.scenario_id,
        status=ScenarioStatus.DRAFT,
        tenant_id=e.tenant_id,
        tree_id=payload["tree_id"],
        scenario_type=ScenarioType(payload.get("scenario_type", ScenarioType.APPLICATION.value)),
        external_id=payload.get("external_id"),
        family_id=payload.get("family_id"),
        created_by=e.actor_id,
        started_at=e.valid_at,
        expires_at=utc(_parse_time(expires_at)) if expires_at else None,
    )


def _check_node(tree: Optional[TreeIndex], node_id: str) -> Optional[TreeNode]:
    if tree is None:
        return None
    node = tree.get(node_id)
    if node is None:
        raise ProjectionFault(ErrorCode.NOT_FOUND, f"Node {node_id} is not in the scenario's tree")
    return node


def _close(answer: Answer, e: ScenarioEvent, reason: Optional[str]) -> AnswerHistoryEntry:
    # Real-world window closes at the superseding event's valid time;
    # system window closes when the superseding event was recorded
    return AnswerHistoryEntry(
        question_id=answer.question_id,
        question_code=answer.question_code,
        node_id=answer.node_id,
        value=answer.value,
        source=answer.source,
        provided_by=answer.provided_by,
        validity=ValidityWindow(valid_from=answer.valid_from).closed_at(e.valid_at),
        recorded_from=answer.recorded_at,
        recorded_to=max(e.recorded_at, answer.recorded_at),
        event_id=answer.event_id,
        closed_by_event_id=e.event_id,
        sequence=answer.sequence,
        change_reason=reason,
    )


def _answer_provided(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    payload = e.payload
    node = _check_node(tree, payload["node_id"])
    if node is not None and node.question_id != payload["question_id"]:
        raise ProjectionFault(
            ErrorCode.VALIDATION_FAILED,
            f"Node {node.node_id} does not ask question {payload['question_id']}",
        )
    answer = Answer(
        question_id=payload["question_id"],
        question_code=payload.get("question_code") or payload["question_id"],
        node_id=payload["node_id"],
        value=from_record(payload["value"]),
        source=AnswerSource(payload.get("source", AnswerSource.USER.value)),
        provided_by=e.actor_id,
        event_id=e.event_id,
        sequence=e.sequence,
        valid_from=e.valid_at,
        recorded_at=e.recorded_at,
    )
    previous = p.answer_for(answer.question_id)
    history = p.history
    if previous is not None:
        history = history + (_close(previous, e, payload.get("reason") or "superseded"),)
    answers = tuple(sorted(
        [a for a in p.answers if a.question_id != answer.question_id] + [answer],
        key=lambda a: a.question_id,
    ))
    status = ScenarioStatus.IN_PROGRESS if p.status is ScenarioStatus.DRAFT else p.status
    return replace(p, answers=answers, history=history, status=status)


def _answer_cleared(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    question_id = e.payload["question_id"]
    previous = p.answer_for(question_id)
    if previous is None:
        raise ProjectionFault(ErrorCode.NOT_FOUND, f"No answer to clear for {question_id}")
    return replace(
        p,
        answers=tuple(a for a in p.answers if a.question_id != question_id),
        history=p.history + (_close(previous, e, e.payload.get("reason") or "cleared"),),
    )


def _node_entered(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    node_id = e.payload["node_id"]
    node = _check_node(tree, node_id)
    nav = p.navigation
    visited = nav.visited if node_id in nav.visited else nav.visited + (node_id,)
    stage = node.stage if node is not None and node.stage else nav.current_stage
    return replace(p, navigation=replace(nav, current_node_id=node_id, current_stage=stage, visited=visited))


def _node_exited(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    node_id = e.payload["node_id"]
    _check_node(tree, node_id)
    direction = ExitDirection(e.payload["direction"])
    nav = p.navigation
    completed = nav.completed
    if direction is ExitDirection.FORWARD and node_id not in completed:
        completed = completed + (node_id,)
    current = None if nav.current_node_id == node_id else nav.current_node_id
    return replace(p, navigation=replace(nav, completed=completed, current_node_id=current))


def _mark_validity(p: Projection, node_id: str, is_valid: bool, errors: Tuple[str, ...]) -> Projection:
    answers = tuple(
        replace(a, is_valid=is_valid, validation_errors=errors) if a.node_id == node_id else a
        for a in p.answers
    )
    return replace(p, answers=answers)


def _validation_failed(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    errors = e.payload["errors"]
    if isinstance(errors, str):
        errors = [errors]
    return _mark_validity(p, e.payload["node_id"], False, tuple(str(x) for x in errors))


def _validation_passed(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    return _mark_validity(p, e.payload["node_id"], True, ())


def _stage_completed(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    stage = e.payload["stage"]
    nav = p.navigation
    if stage in nav.completed_stages:
        return p
    return replace(p, navigation=replace(nav, completed_stages=nav.completed_stages + (stage,)))


def _submitted(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    return replace(p, status=ScenarioStatus.SUBMITTED, submitted_at=e.valid_at)


def _completed(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    return replace(p, status=ScenarioStatus.COMPLETED, closed_at=e.valid_at)


def _cancelled(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    return replace(p, status=ScenarioStatus.CANCELLED, closed_at=e.valid_at)


def _external_data(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    data = e.payload["data"]
    if not isinstance(data, dict):
        raise ProjectionFault(ErrorCode.VALIDATION_FAILED, "External data must be an object")
    record = ExternalData(source=str(e.payload["source"]), data=data, event_id=e.event_id, sequence=e.sequence)
    return replace(p, external_data=p.external_data + (record,))


def _family_linked(p: Projection, e: ScenarioEvent, tree: Optional[TreeIndex]) -> Projection:
    return replace(p, family_id=str(e.payload["family_id"]))


_HANDLERS: Mapping[EventType, Callable[[Projection, ScenarioEvent, Optional[TreeIndex]], Projection]] = {
    EventType.SCENARIO_STARTED: _started,
    EventType.NODE_ENTERED: _node_entered,
    EventType.NODE_EXITED: _node_exited,
    EventType.ANSWER_PROVIDED: _answer_provided,
    EventType.ANSWER_CLEARED: _answer_cleared,
    EventType.VALIDATION_FAILED: _validation_failed,
    EventType.VALIDATION_PASSED: _validation_passed,
    EventType.STAGE_COMPLETED: _stage_completed,
    EventType.SCENARIO_SUBMITTED: _submitted,
    EventType.SCENARIO_COMPLETED: _completed,
    EventType.SCENARIO_CANCELLED: _cancelled,
    EventType.EXTERNAL_DATA_RECEIVED: _external_data,
    EventType.FAMILY_LINKED: _family_linked,
}


# =============================================================================
# COUNTS
# =============================================================================

def progress_of(answered: int, total: int) -> Decimal:
    if total <= 0:
        return Decimal("0.00")
    return (Decimal(answered) * 100 / Decimal(total)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _with_counts(p: Projection, tree: Optional[TreeIndex]) -> Projection:
    """Question totals over the whole tree (navigation narrows them to visible nodes)."""
    if tree is None:
        return p
    answered_ids = {a.question_id for a in p.answers}
    answered = sum(1 for n in tree.question_nodes if n.question_id in answered_ids)
    total = len(tree.question_nodes)
    nav = p.navigation
    if nav.total_questions == total and nav.answered_questions == answered:
        return p
    return replace(p, navigation=replace(
        nav, total_questions=total, answered_questions=answered, progress=progress_of(answered, total),
    ))


def _parse_time(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace('Z', '+00:00'))
