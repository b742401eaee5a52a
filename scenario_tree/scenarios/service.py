"""
Scenario Service
================

Runtime orchestration of one scenario:

    action -> validated event -> log append -> projection -> availability

GUARANTEES:
===========
1. Answers are validated (data type + JSON Schema) BEFORE anything is
   appended; a rejected answer leaves no trace in the log
2. The append and the projection update that follows it happen under the
   scenario's lock: readers see the state before or after, never between
3. Status changes only through events; an action that is not allowed in
   the current status is rejected before the append
4. A scenario of another tenant does not exist for the caller
5. Repeating an action with the same idempotency key returns the original
   event and appends nothing

HIDDEN ANSWERS:
===============
Answers to nodes that become hidden are kept (and still feed conditions),
but they are suppressed from the answer feed and never required at submit.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple
import logging
import threading

from ..catalog.registry import QuestionCatalog
from ..catalog.validation import validate_answer
from ..contracts.base import RequestContext, content_hash, new_id, utc
from ..contracts.catalog import Question, QuestionStatus
from ..contracts.conditions import RulePurpose
from ..contracts.events import AnswerSource, EventType, ExitDirection, ScenarioEvent
from ..contracts.state import NodeAvailability, Projection, ScenarioType
from ..contracts.tree import NodeKind, TreeNode
from ..contracts.values import AnswerValue, to_record
from ..errors import (
    DuplicateError, InvalidStateTransition, NotFoundError, ValidationError,
)
from ..navigation.cache import AvailabilityCache
from ..navigation.engine import (
    NavigationEngine, hidden_question_ids, open_requirements, summarize,
)
from ..temporal.clock import LogicalClock
from ..temporal.event_log import ScenarioEventLog
from ..temporal.projector import TreeIndex, allowed, apply, empty
from ..temporal.replay import ReplayEngine
from ..tree.store import TreeStore


logger = logging.getLogger(__name__)

ScenarioKey = Tuple[str, str]  # (tenant_id, scenario_id)


@dataclass(frozen=True)
class ActionResult:
    """What a runtime action produced: its event(s), new state, new node set."""
    events: Tuple[ScenarioEvent, ...]
    state: Projection
    availability: Tuple[NodeAvailability, ...]

    @property
    def event(self) -> Optional[ScenarioEvent]:
        return self.events[-1] if self.events else None


def _scenario_id_for(tenant_id: str, idempotency_key: Optional[str]) -> str:
    """A keyed start always lands on the same scenario id."""
    if idempotency_key is None:
        return new_id("scn")
    return f"scn_{content_hash({'tenant_id': tenant_id, 'start_key': idempotency_key})[:24]}"


class ScenarioService:

    def __init__(
        self,
        catalog: QuestionCatalog,
        trees: TreeStore,
        log: ScenarioEventLog,
        navigation: NavigationEngine,
        cache: Optional[AvailabilityCache] = None,
        clock: Optional[LogicalClock] = None,
    ):
        self._catalog = catalog
        self._trees = trees
        self._log = log
        self._navigation = navigation
        self._cache = cache
        self._clock = clock or LogicalClock.live()
        self._replay = ReplayEngine(log, self._tree_index)

        self._projections: Dict[ScenarioKey, Projection] = {}
        self._external_ids: Dict[Tuple[str, str], str] = {}
        self._families: Dict[Tuple[str, str], List[str]] = {}
        self._lock = threading.RLock()
        self._load_existing()

    @property
    def replay(self) -> ReplayEngine:
        return self._replay

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(
        self,
        ctx: RequestContext,
        tree_id: str,
        scenario_type: ScenarioType = ScenarioType.APPLICATION,
        external_id: Optional[str] = None,
        family_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        scenario_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        valid_at: Optional[datetime] = None,
    ) -> ActionResult:
        """
        Start a scenario on a tree. Only PREVIEW scenarios may run on an
        unpublished tree.
        """
        tree = self._trees.get(ctx, tree_id)
        if not tree.is_published and scenario_type is not ScenarioType.PREVIEW:
            raise InvalidStateTransition(
                f"Tree {tree_id} is not published",
                {"tree_id": tree_id},
            )
        sid = scenario_id or _scenario_id_for(ctx.tenant_id, idempotency_key)
        key = (ctx.tenant_id, sid)

        with self._log.lock_for(*key):
            if idempotency_key is not None:
                original = self._log.find_by_key(ctx.tenant_id, sid, idempotency_key)
                if original is not None:
                    return self._result((original,), self._projection(ctx.tenant_id, sid))

            reserved = self._reserve_external_id(ctx.tenant_id, external_id, sid)
            payload: Dict[str, Any] = {
                "tree_id": tree_id,
                "tree_hash": tree.tree_hash,
                "scenario_type": scenario_type.value,
                "external_id": external_id,
                "family_id": family_id,
                "expires_at": utc(expires_at).isoformat() if expires_at else None,
            }
            try:
                event = self._log.append(
                    ctx, sid, EventType.SCENARIO_STARTED, payload,
                    idempotency_key=idempotency_key, valid_at=valid_at,
                )
            except Exception:
                if reserved:
                    with self._lock:
                        self._external_ids.pop((ctx.tenant_id, external_id), None)
                raise
            projection = apply(empty(sid), event, self._tree_index(tree_id))
            with self._lock:
                self._projections[key] = projection
                if family_id:
                    self._families.setdefault((ctx.tenant_id, family_id), []).append(sid)

        logger.info("Started scenario %s on tree %s for tenant %s", sid, tree_id, ctx.tenant_id)
        return self._result((event,), projection)

    def submit(self, ctx: RequestContext, scenario_id: str, idempotency_key: Optional[str] = None) -> ActionResult:
        """
        Submit once every visible, required question is answered and has
        passed its VALIDATION rules. The answer feed at that moment is frozen into the event.
        """
        with self._log.lock_for(ctx.tenant_id, scenario_id):
            replayed = self._replayed(ctx, scenario_id, idempotency_key)
            if replayed is not None:
                return replayed
            projection = self._require_allowed(ctx, scenario_id, EventType.SCENARIO_SUBMITTED)
            availability = self._availability(ctx.tenant_id, projection)
            problems = open_requirements(availability)
            if problems:
                logger.warning("Submit of %s rejected: %d required question(s) open", scenario_id, len(problems))
                raise ValidationError(
                    f"Scenario {scenario_id} has {len(problems)} unanswered or invalid required question(s)",
                    errors=list(problems),
                    context={"scenario_id": scenario_id},
                )
            final = {code: to_record(value) for code, value in self._feed(projection, availability).items()}
            result = self._append(
                ctx, scenario_id, EventType.SCENARIO_SUBMITTED, {"final_answers": final},
                idempotency_key=idempotency_key,
            )
        logger.info("Submitted scenario %s with %d answer(s)", scenario_id, len(final))
        return result

    def complete(
        self,
        ctx: RequestContext,
        scenario_id: str,
        confirmation: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        """External confirmation of a submitted scenario."""
        result = self._append(
            ctx, scenario_id, EventType.SCENARIO_COMPLETED, {"confirmation": confirmation or {}},
            idempotency_key=idempotency_key,
        )
        logger.info("Completed scenario %s", scenario_id)
        return result

    def cancel(
        self,
        ctx: RequestContext,
        scenario_id: str,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        if not reason:
            raise ValidationError("A cancellation reason is required", context={"scenario_id": scenario_id})
        result = self._append(
            ctx, scenario_id, EventType.SCENARIO_CANCELLED, {"reason": reason},
            idempotency_key=idempotency_key,
        )
        logger.info("Cancelled scenario %s: %s", scenario_id, reason)
        return result

    def expire_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """
        Cancel every open scenario whose expires_at has passed.
        Returns the cancelled scenario ids.
        """
        moment = utc(now) if now is not None else self._clock.now()
        with self._lock:
            overdue = sorted(
                key for key, p in self._projections.items()
                if p.status is not None and p.status.is_open
                and p.expires_at is not None and p.expires_at <= moment
            )
        expired: List[str] = []
        for tenant_id, scenario_id in overdue:
            ctx = RequestContext.system(tenant_id)
            try:
                self._append(
                    ctx, scenario_id, EventType.SCENARIO_CANCELLED, {"reason": "expired"},
                    idempotency_key=f"expire:{scenario_id}",
                )
            except InvalidStateTransition:
                # Closed concurrently between the scan and the append
                logger.debug("Scenario %s closed before it could expire", scenario_id)
                continue
            expired.append(scenario_id)
        if expired:
            logger.info("Expired %d scenario(s)", len(expired))
        return expired

    # =========================================================================
    # ANSWERS
    # =========================================================================

    def provide_answer(
        self,
        ctx: RequestContext,
        scenario_id: str,
        node_id: str,
        value: Any,
        idempotency_key: Optional[str] = None,
        valid_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        source: AnswerSource = AnswerSource.USER,
        expected_version: Optional[int] = None,
    ) -> ActionResult:
        """
        Validate and record one answer. VALIDATION rules on the node are
        then evaluated and their outcome recorded as a follow-up event.

        `valid_at` back-dates the answer in real-world time (corrections).
        """
        with self._log.lock_for(ctx.tenant_id, scenario_id):
            replayed = self._replayed(ctx, scenario_id, idempotency_key)
            if replayed is not None:
                return replayed
            projection = self._require_allowed(ctx, scenario_id, EventType.ANSWER_PROVIDED)
            node = self._question_node(projection, node_id)
            if source is AnswerSource.USER:
                self._require_visible(ctx.tenant_id, projection, node)
            question = self._answerable(node)
            answer_value = validate_answer(question, value)

            payload = {
                "node_id": node.node_id,
                "question_id": question.question_id,
                "question_code": question.code,
                "value": to_record(answer_value),
                "source": source.value,
                "reason": reason,
            }
            result = self._append(
                ctx, scenario_id, EventType.ANSWER_PROVIDED, payload,
                idempotency_key=idempotency_key, expected_version=expected_version, valid_at=valid_at,
            )
            result = self._record_validation(ctx, node, result, idempotency_key)
        logger.debug("Answer to %s recorded on %s", question.code, scenario_id)
        return result

    def clear_answer(
        self,
        ctx: RequestContext,
        scenario_id: str,
        node_id: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        valid_at: Optional[datetime] = None,
    ) -> ActionResult:
        with self._log.lock_for(ctx.tenant_id, scenario_id):
            replayed = self._replayed(ctx, scenario_id, idempotency_key)
            if replayed is not None:
                return replayed
            projection = self._require_allowed(ctx, scenario_id, EventType.ANSWER_CLEARED)
            node = self._question_node(projection, node_id)
            if projection.answer_for(node.question_id) is None:
                raise NotFoundError(
                    f"No answer to clear on node {node_id}",
                    {"scenario_id": scenario_id, "node_id": node_id},
                )
            return self._append(
                ctx, scenario_id, EventType.ANSWER_CLEARED,
                {"node_id": node.node_id, "question_id": node.question_id, "reason": reason},
                idempotency_key=idempotency_key, valid_at=valid_at,
            )

    def import_answers(
        self,
        ctx: RequestContext,
        scenario_id: str,
        fields: Mapping[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        """
        Import bridge: each field (question code -> raw value) becomes one
        ANSWER_PROVIDED with source IMPORT. VALIDATION rules of the imported
        nodes are then recorded as follow-up events, as for user answers.

        All fields are validated first; if any is unknown or invalid,
        nothing is appended.
        """
        with self._log.lock_for(ctx.tenant_id, scenario_id):
            projection = self._require_allowed(ctx, scenario_id, EventType.ANSWER_PROVIDED)
            by_code = self._question_nodes_by_code(projection)
            prepared: List[Tuple[TreeNode, Question, AnswerValue]] = []
            errors: List[str] = []
            for code in sorted(fields):
                entry = by_code.get(code)
                if entry is None:
                    errors.append(f"{code}: no question node with this code in the tree")
                    continue
                node, question = entry
                try:
                    prepared.append((node, question, validate_answer(question, fields[code])))
                except ValidationError as exc:
                    errors.extend(f"{code}: {e}" for e in exc.errors)
            if errors:
                logger.warning("Import into %s rejected with %d error(s)", scenario_id, len(errors))
                raise ValidationError(
                    f"Import into {scenario_id} rejected",
                    errors=errors,
                    context={"scenario_id": scenario_id},
                )

            events: List[ScenarioEvent] = []
            appended: List[Tuple[TreeNode, ActionResult, Optional[str]]] = []
            result = None
            for node, question, value in prepared:
                field_key = f"{idempotency_key}:{question.code}" if idempotency_key else None
                result = self._append(
                    ctx, scenario_id, EventType.ANSWER_PROVIDED,
                    {
                        "node_id": node.node_id,
                        "question_id": question.question_id,
                        "question_code": question.code,
                        "value": to_record(value),
                        "source": AnswerSource.IMPORT.value,
                        "reason": "import",
                    },
                    idempotency_key=field_key,
                )
                appended.append((node, result, field_key))
                events.extend(result.events)
            if result is None:
                return self._result((), projection)

            # Validation sees the state holding every imported field
            for node, own, field_key in appended:
                if node.rules_for(RulePurpose.VALIDATION):
                    result = self._record_validation(ctx, node, replace(own, state=result.state), field_key)
                    events.extend(result.events[len(own.events):])
        logger.info("Imported %d answer(s) into %s", len(events), scenario_id)
        return replace(result, events=tuple(events))

    # =========================================================================
    # NAVIGATION
    # =========================================================================

    def enter_node(
        self,
        ctx: RequestContext,
        scenario_id: str,
        node_id: str,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        with self._log.lock_for(ctx.tenant_id, scenario_id):
            replayed = self._replayed(ctx, scenario_id, idempotency_key)
            if replayed is not None:
                return replayed
            projection = self._require_allowed(ctx, scenario_id, EventType.NODE_ENTERED)
            node = self._trees.node(projection.tree_id, node_id)
            self._require_visible(ctx.tenant_id, projection, node)
            return self._append(
                ctx, scenario_id, EventType.NODE_ENTERED, {"node_id": node_id},
                idempotency_key=idempotency_key,
            )

    def exit_node(
        self,
        ctx: RequestContext,
        scenario_id: str,
        node_id: str,
        direction: ExitDirection = ExitDirection.FORWARD,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        projection = self._require(ctx, scenario_id)
        self._trees.node(projection.tree_id, node_id)
        return self._append(
            ctx, scenario_id, EventType.NODE_EXITED,
            {"node_id": node_id, "direction": direction.value},
            idempotency_key=idempotency_key,
        )

    def complete_stage(
        self,
        ctx: RequestContext,
        scenario_id: str,
        stage: str,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        """A stage completes once its visible, required questions are answered."""
        with self._log.lock_for(ctx.tenant_id, scenario_id):
            replayed = self._replayed(ctx, scenario_id, idempotency_key)
            if replayed is not None:
                return replayed
            projection = self._require_allowed(ctx, scenario_id, EventType.STAGE_COMPLETED)
            availability = self._availability(ctx.tenant_id, projection)
            in_stage = [a for a in availability if a.stage == stage]
            if not in_stage:
                raise NotFoundError(f"Stage {stage!r} has no nodes in this tree", {"stage": stage})
            problems = open_requirements(in_stage)
            if problems:
                raise ValidationError(
                    f"Stage {stage!r} has {len(problems)} unanswered or invalid required question(s)",
                    errors=list(problems),
                    context={"scenario_id": scenario_id, "stage": stage},
                )
            return self._append(
                ctx, scenario_id, EventType.STAGE_COMPLETED, {"stage": stage},
                idempotency_key=idempotency_key,
            )

    def availability(self, ctx: RequestContext, scenario_id: str) -> Tuple[NodeAvailability, ...]:
        """Availability of every node of the scenario's tree, in pre-order."""
        return self._availability(ctx.tenant_id, self._require(ctx, scenario_id))

    def available_nodes(self, ctx: RequestContext, scenario_id: str) -> Tuple[NodeAvailability, ...]:
        return tuple(a for a in self.availability(ctx, scenario_id) if a.visible)

    # =========================================================================
    # EXTERNAL DATA & FAMILIES
    # =========================================================================

    def receive_external_data(
        self,
        ctx: RequestContext,
        scenario_id: str,
        source: str,
        data: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        if not isinstance(data, dict):
            raise ValidationError("External data must be an object", context={"source": source})
        return self._append(
            ctx, scenario_id, EventType.EXTERNAL_DATA_RECEIVED, {"source": source, "data": data},
            idempotency_key=idempotency_key,
        )

    def link_family(
        self,
        ctx: RequestContext,
        scenario_id: str,
        family_id: str,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        result = self._append(
            ctx, scenario_id, EventType.FAMILY_LINKED, {"family_id": family_id},
            idempotency_key=idempotency_key,
        )
        with self._lock:
            for members in self._families.values():
                if scenario_id in members:
                    members.remove(scenario_id)
            self._families.setdefault((ctx.tenant_id, family_id), []).append(scenario_id)
        return result

    def family_status(self, ctx: RequestContext, family_id: str) -> Dict[str, str]:
        """
        scenario_id -> status for every member. Members are read one by
        one, so the result is not a single consistent snapshot.
        """
        with self._lock:
            members = list(self._families.get((ctx.tenant_id, family_id), ()))
        if not members:
            raise NotFoundError(f"Family {family_id} not found", {"family_id": family_id})
        return {sid: self._require(ctx, sid).status.value for sid in members}

    # =========================================================================
    # READS
    # =========================================================================

    def state(self, ctx: RequestContext, scenario_id: str) -> Projection:
        """Current projection with navigation narrowed to visible nodes."""
        projection = self._require(ctx, scenario_id)
        availability = self._availability(ctx.tenant_id, projection)
        return replace(projection, navigation=summarize(projection.navigation, availability))

    def state_as_of(
        self,
        ctx: RequestContext,
        scenario_id: str,
        version: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> Projection:
        """Time travel: state at a log version, or as known at system time `at`."""
        self._require(ctx, scenario_id)
        if version is not None:
            return self._replay.as_of_version(ctx.tenant_id, scenario_id, version)
        if at is not None:
            return self._replay.as_of_system_time(ctx.tenant_id, scenario_id, at)
        return self._replay.rebuild(ctx.tenant_id, scenario_id)

    def answer_at(
        self,
        ctx: RequestContext,
        scenario_id: str,
        question_code: str,
        valid_time: datetime,
        as_of: Optional[datetime] = None,
    ) -> Optional[AnswerValue]:
        self._require(ctx, scenario_id)
        return self._replay.answer_at_valid_time(ctx.tenant_id, scenario_id, question_code, valid_time, as_of)

    def answer_feed(self, ctx: RequestContext, scenario_id: str) -> Dict[str, AnswerValue]:
        """question_code -> typed value, without answers to hidden questions."""
        projection = self._require(ctx, scenario_id)
        return self._feed(projection, self._availability(ctx.tenant_id, projection))

    def events(self, ctx: RequestContext, scenario_id: str) -> Tuple[ScenarioEvent, ...]:
        self._require(ctx, scenario_id)
        return self._log.replay(ctx.tenant_id, scenario_id)

    def scenarios(self, ctx: RequestContext) -> List[Projection]:
        with self._lock:
            found = [p for (tid, _), p in self._projections.items() if tid == ctx.tenant_id]
        return sorted(found, key=lambda p: p.scenario_id)

    def verify(self, ctx: RequestContext, scenario_id: str) -> Tuple[bool, Optional[str]]:
        """Hash chain plus round-trip replay check."""
        self._require(ctx, scenario_id)
        ok, error = self._log.verify_integrity(ctx.tenant_id, scenario_id)
        if not ok:
            return (False, error.message)
        return self._replay.verify_round_trip(ctx.tenant_id, scenario_id)

    def active_scenario_count(self, question_id: str) -> int:
        """Open (DRAFT / IN_PROGRESS) scenarios holding an answer to the question."""
        with self._lock:
            projections = list(self._projections.values())
        return sum(
            1 for p in projections
            if p.status is not None and p.status.is_open and p.answer_for(question_id) is not None
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _append(
        self,
        ctx: RequestContext,
        scenario_id: str,
        event_type: EventType,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        causation_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        valid_at: Optional[datetime] = None,
    ) -> ActionResult:
        key = (ctx.tenant_id, scenario_id)
        with self._log.lock_for(*key):
            replayed = self._replayed(ctx, scenario_id, idempotency_key)
            if replayed is not None:
                return replayed
            current = self._require_allowed(ctx, scenario_id, event_type)
            event = self._log.append(
                ctx, scenario_id, event_type, payload,
                idempotency_key=idempotency_key,
                causation_id=causation_id,
                expected_version=expected_version,
                valid_at=valid_at,
            )
            updated = apply(current, event, self._tree_index(current.tree_id))
            with self._lock:
                self._projections[key] = updated
            if self._cache is not None:
                self._cache.invalidate(*key)
            return self._result((event,), updated)

    def _replayed(self, ctx: RequestContext, scenario_id: str, idempotency_key: Optional[str]) -> Optional[ActionResult]:
        if idempotency_key is None:
            return None
        original = self._log.find_by_key(ctx.tenant_id, scenario_id, idempotency_key)
        if original is None:
            return None
        return self._result((original,), self._require(ctx, scenario_id))

    def _record_validation(
        self,
        ctx: RequestContext,
        node: TreeNode,
        answered: ActionResult,
        idempotency_key: Optional[str],
    ) -> ActionResult:
        if not node.rules_for(RulePurpose.VALIDATION):
            return answered
        projection = answered.state
        failed = self._navigation.failed_validations(node, projection, self._today())
        cause = answered.event.event_id
        follow_key = f"{idempotency_key}:validation" if idempotency_key else None
        if failed:
            messages = [rule.action or rule.condition_id for rule in failed]
            result = self._append(
                ctx, projection.scenario_id, EventType.VALIDATION_FAILED,
                {"node_id": node.node_id, "errors": messages},
                idempotency_key=follow_key, causation_id=cause,
            )
        else:
            result = self._append(
                ctx, projection.scenario_id, EventType.VALIDATION_PASSED,
                {"node_id": node.node_id},
                idempotency_key=follow_key, causation_id=cause,
            )
        return replace(result, events=answered.events + result.events)

    def _require(self, ctx: RequestContext, scenario_id: str) -> Projection:
        return self._projection(ctx.tenant_id, scenario_id)

    def _require_allowed(self, ctx: RequestContext, scenario_id: str, event_type: EventType) -> Projection:
        projection = self._require(ctx, scenario_id)
        if not allowed(event_type, projection.status):
            status = projection.status.value if projection.status else "NOT_STARTED"
            logger.warning("Rejected %s on %s in status %s", event_type.value, scenario_id, status)
            raise InvalidStateTransition(
                f"{event_type.value} is not allowed while scenario is {status}",
                {"scenario_id": scenario_id, "status": status},
            )
        return projection

    def _projection(self, tenant_id: str, scenario_id: str) -> Projection:
        key = (tenant_id, scenario_id)
        with self._lock:
            projection = self._projections.get(key)
        if projection is not None:
            return projection
        if not self._log.exists(tenant_id, scenario_id):
            raise NotFoundError(f"Scenario {scenario_id} not found", {"scenario_id": scenario_id})
        projection = self._replay.rebuild(tenant_id, scenario_id)
        with self._lock:
            self._projections[key] = projection
        return projection

    def _load_existing(self) -> None:
        """Rebuild projections and indexes for scenarios already in the log."""
        keys = sorted({(e.tenant_id, e.scenario_id) for e in self._log.all_events()})
        for tenant_id, scenario_id in keys:
            projection = self._replay.rebuild(tenant_id, scenario_id)
            self._projections[(tenant_id, scenario_id)] = projection
            if projection.external_id:
                self._external_ids[(tenant_id, projection.external_id)] = scenario_id
            if projection.family_id:
                self._families.setdefault((tenant_id, projection.family_id), []).append(scenario_id)
        if keys:
            logger.info("Rebuilt %d scenario projection(s) from the log", len(keys))

    def _reserve_external_id(self, tenant_id: str, external_id: Optional[str], scenario_id: str) -> bool:
        if not external_id:
            return False
        with self._lock:
            holder = self._external_ids.get((tenant_id, external_id))
            if holder is not None and holder != scenario_id:
                raise DuplicateError(
                    f"External id {external_id!r} already used by {holder}",
                    {"external_id": external_id},
                )
            self._external_ids[(tenant_id, external_id)] = scenario_id
            return holder is None

    def _tree_index(self, tree_id: Optional[str]) -> Optional[TreeIndex]:
        if tree_id is None:
            return None
        nodes = self._trees.nodes(tree_id)
        return TreeIndex(nodes) if nodes else None

    def _question_node(self, projection: Projection, node_id: str) -> TreeNode:
        node = self._trees.node(projection.tree_id, node_id)
        if node.kind is not NodeKind.QUESTION or node.question_id is None:
            raise ValidationError(
                f"Node {node_id} is a {node.kind.value} node and takes no answer",
                context={"node_id": node_id},
            )
        return node

    def _answerable(self, node: TreeNode) -> Question:
        question = self._catalog.get(node.question_id)
        if question.status in (QuestionStatus.ARCHIVED, QuestionStatus.DELETED):
            raise ValidationError(
                f"Question {question.code} is {question.status.value}",
                context={"question_id": question.question_id},
            )
        return question

    def _question_nodes_by_code(self, projection: Projection) -> Dict[str, Tuple[TreeNode, Question]]:
        """First question node (pre-order) per question code."""
        found: Dict[str, Tuple[TreeNode, Question]] = {}
        for node in self._trees.nodes(projection.tree_id):
            if node.kind is not NodeKind.QUESTION or node.question_id is None:
                continue
            question = self._catalog.get(node.question_id)
            if question.status in (QuestionStatus.ARCHIVED, QuestionStatus.DELETED):
                continue
            found.setdefault(question.code, (node, question))
        return found

    def _require_visible(self, tenant_id: str, projection: Projection, node: TreeNode) -> None:
        for entry in self._availability(tenant_id, projection):
            if entry.node_id == node.node_id:
                if not entry.visible:
                    raise ValidationError(
                        f"Node {node.node_id} is not available",
                        errors=[f"blocked by {cid}" for cid in entry.blocking_conditions],
                        context={"node_id": node.node_id},
                    )
                return
        raise NotFoundError(f"Node {node.node_id} not found in tree", {"node_id": node.node_id})

    def _availability(self, tenant_id: str, projection: Projection) -> Tuple[NodeAvailability, ...]:
        tree_hash = self._trees.tree_hash(projection.tree_id)
        if self._cache is not None:
            cached = self._cache.get(tenant_id, projection.scenario_id, projection.version, tree_hash)
            if cached is not None:
                return cached
        nodes = self._trees.nodes(projection.tree_id)
        questions: Dict[str, Question] = {}
        for node in nodes:
            if node.question_id is not None and node.question_id not in questions:
                try:
                    questions[node.question_id] = self._catalog.get(node.question_id)
                except NotFoundError:
                    logger.warning("Node %s references unknown question %s", node.node_id, node.question_id)
        availability = self._navigation.evaluate(nodes, projection, questions, self._today())
        if self._cache is not None:
            self._cache.put(tenant_id, projection.scenario_id, projection.version, tree_hash, availability)
        return availability

    @staticmethod
    def _feed(projection: Projection, availability: Tuple[NodeAvailability, ...]) -> Dict[str, AnswerValue]:
        hidden = hidden_question_ids(availability)
        return {
            answer.question_code: answer.value
            for answer in sorted(projection.answers, key=lambda a: a.question_code)
            if answer.question_id not in hidden
        }

    def _result(self, events: Tuple[ScenarioEvent, ...], projection: Projection) -> ActionResult:
        return ActionResult(
            events=events,
            state=projection,
            availability=self._availability(projection.tenant_id, projection) if projection.tenant_id else (),
        )

    def _today(self) -> date:
        return self._clock.now().date()
