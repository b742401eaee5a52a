"""
Scenario Tree Engine: API Server
================================

Authoring, runtime and audit endpoints over one ScenarioTreeBackend.

Every request carries its caller explicitly:
- X-Tenant-Id     (required)
- X-Actor-Id      (required)
- X-Correlation-Id (optional, copied onto appended events)
- Idempotency-Key (optional, runtime writes only)

Errors are returned as {"error": {"code", "message", "context", ...}}
with a stable code per failure kind.

Usage:
    uvicorn scenario_tree.api.server:app --reload
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..contracts.base import ErrorCode, RequestContext
from ..contracts.catalog import QuestionScope, QuestionStatus
from ..contracts.tree import BehaviorConfig
from ..engine import BackendConfig, ScenarioTreeBackend
from ..errors import (
    ConcurrentModificationError, NotFoundError, ScenarioTreeError,
    TreePublishValidationError, ValidationError,
)
from . import mapper
from .schemas import (
    AnswerIn, CancelIn, CompleteIn, CompoundConditionCreate, ExternalDataIn,
    FamilyLink, ImportIn, LenderCreate, NodeCreate, NodeExit, NodeMove, NodeRef,
    QuestionCreate, QuestionDeprecate, QuestionReason, QuestionRename,
    QuestionVersionCreate, ScenarioStart, SimpleConditionCreate, TreeCreate,
)


logger = logging.getLogger(__name__)

# Stable HTTP status per error code
HTTP_STATUS = {
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DUPLICATE: 409,
    ErrorCode.PROTECTED_QUESTION: 403,
    ErrorCode.QUESTION_IN_USE: 409,
    ErrorCode.INVALID_LIFECYCLE_TRANSITION: 409,
    ErrorCode.TREE_PUBLISH_INVALID: 422,
    ErrorCode.TREE_IMMUTABLE: 409,
    ErrorCode.TREE_STRUCTURE_INVALID: 422,
    ErrorCode.IMMUTABLE_LOG_VIOLATION: 405,
    ErrorCode.CONCURRENT_MODIFICATION: 409,
    ErrorCode.TIMELINE_CORRUPTION: 500,
    ErrorCode.INVALID_STATE_TRANSITION: 409,
}


def error_body(exc: ScenarioTreeError) -> dict:
    body = {"code": exc.code.name, "message": exc.message, "context": exc.context}
    if isinstance(exc, ValidationError):
        body["errors"] = list(exc.errors)
    if isinstance(exc, TreePublishValidationError):
        body["report"] = mapper.map_report(exc.report)
    if isinstance(exc, ConcurrentModificationError):
        body["expected_version"] = exc.expected_version
        body["current_version"] = exc.current_version
    return {"error": body}


# =============================================================================
# INFRASTRUCTURE SETUP
# =============================================================================

def create_app(backend: Optional[ScenarioTreeBackend] = None) -> FastAPI:
    """
    Build the API. Without an explicit backend, one is created from the
    environment when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.backend is None:
            config = BackendConfig.from_env()
            logger.info("Initializing backend (storage=%s)", config.storage.backend_type)
            app.state.backend = ScenarioTreeBackend(config)
        yield
        logger.info("Shutting down backend")

    app = FastAPI(
        title="Scenario Tree Engine API",
        version="0.1.0",
        description="Authoring and runtime API for event-sourced scenario trees",
        lifespan=lifespan,
    )
    app.state.backend = backend

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ScenarioTreeError)
    async def handle_domain_error(request: Request, exc: ScenarioTreeError):
        status = HTTP_STATUS.get(exc.code, 400)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=error_body(exc))

    _register_routes(app)
    return app


def get_backend(request: Request) -> ScenarioTreeBackend:
    backend = request.app.state.backend
    if backend is None:
        raise HTTPException(status_code=503, detail="Backend not initialized")
    return backend


def get_context(
    x_tenant_id: str = Header(...),
    x_actor_id: str = Header(...),
    x_correlation_id: Optional[str] = Header(None),
) -> RequestContext:
    try:
        return RequestContext(tenant_id=x_tenant_id, actor_id=x_actor_id, correlation_id=x_correlation_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# =============================================================================
# ENDPOINTS
# =============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check(backend: ScenarioTreeBackend = Depends(get_backend)):
        return {
            "status": "online",
            "storage": backend.config.storage.backend_type,
            "cache": backend.cache.stats if backend.cache is not None else None,
        }

    # -------------------------------------------------------------------------
    # Questions & lenders
    # -------------------------------------------------------------------------

    @app.post("/api/v1/questions", status_code=201)
    def define_question(
        body: QuestionCreate,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        question = backend.catalog.define(
            ctx, body.code, body.data_type, body.scope,
            owner_id=body.owner_id, owner_type=body.owner_type,
            validation_schema=body.validation_schema, label=body.label,
            valid_from=body.valid_from, valid_to=body.valid_to, status=body.status,
        )
        return mapper.map_question(question)

    @app.get("/api/v1/questions")
    def list_questions(
        owner_id: Optional[str] = None,
        scope: Optional[QuestionScope] = None,
        status: Optional[QuestionStatus] = None,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return {"questions": [mapper.map_question(q) for q in backend.catalog.list(owner_id, scope, status)]}

    @app.get("/api/v1/questions/{question_id}")
    def get_question(
        question_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_question(backend.catalog.get(question_id))

    @app.post("/api/v1/questions/{question_id}/versions", status_code=201)
    def define_question_version(
        question_id: str,
        body: QuestionVersionCreate,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        question = backend.catalog.define_version(
            ctx, question_id, valid_from=body.valid_from, data_type=body.data_type,
            validation_schema=body.validation_schema, label=body.label,
        )
        return mapper.map_question(question)

    @app.post("/api/v1/questions/{question_id}/activate")
    def activate_question(
        question_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_question(backend.catalog.activate(ctx, question_id))

    @app.post("/api/v1/questions/{question_id}/deprecate")
    def deprecate_question(
        question_id: str,
        body: QuestionDeprecate,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        question = backend.catalog.deprecate(ctx, question_id, body.replacement_id, body.reason)
        return mapper.map_question(question)

    @app.post("/api/v1/questions/{question_id}/archive")
    def archive_question(
        question_id: str,
        body: QuestionReason,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_question(backend.catalog.archive(ctx, question_id, body.reason))

    @app.post("/api/v1/questions/{question_id}/rename")
    def rename_question(
        question_id: str,
        body: QuestionRename,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_question(backend.catalog.rename(ctx, question_id, body.new_code))

    @app.delete("/api/v1/questions/{question_id}")
    def delete_question(
        question_id: str,
        reason: str = "",
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_question(backend.catalog.delete(ctx, question_id, reason))

    @app.post("/api/v1/lenders", status_code=201)
    def register_lender(
        body: LenderCreate,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_lender(backend.catalog.register_lender(ctx, body.name, body.lender_id))

    @app.post("/api/v1/lenders/{lender_id}/archive")
    def archive_lender(
        lender_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        archived = backend.catalog.archive_lender(ctx, lender_id)
        return {"archived_questions": [mapper.map_question(q) for q in archived]}

    # -------------------------------------------------------------------------
    # Conditions
    # -------------------------------------------------------------------------

    @app.post("/api/v1/conditions/simple", status_code=201)
    def create_simple_condition(
        body: SimpleConditionCreate,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        try:
            left = mapper.to_operand(body.left)
            right = mapper.to_operand(body.right) if body.right is not None else None
        except ValueError as exc:
            raise ValidationError(f"Invalid operand: {exc}") from exc
        condition_id = backend.conditions.simple(left, body.operator, right)
        return mapper.map_condition(backend.conditions.get(condition_id))

    @app.post("/api/v1/conditions/compound", status_code=201)
    def create_compound_condition(
        body: CompoundConditionCreate,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        condition_id = backend.conditions.compound(body.operator, body.children)
        return mapper.map_condition(backend.conditions.get(condition_id))

    @app.get("/api/v1/conditions/{condition_id}")
    def get_condition(
        condition_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        condition = backend.conditions.get(condition_id)
        if condition is None:
            raise NotFoundError(f"Condition {condition_id} not found", {"condition_id": condition_id})
        return mapper.map_condition(condition)

    # -------------------------------------------------------------------------
    # Trees
    # -------------------------------------------------------------------------

    @app.post("/api/v1/trees", status_code=201)
    def create_tree(
        body: TreeCreate,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_tree(backend.trees.create_tree(ctx, body.name, body.tree_type))

    @app.get("/api/v1/trees")
    def list_trees(
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return {"trees": [mapper.map_tree(t) for t in backend.trees.list_trees(ctx)]}

    @app.get("/api/v1/trees/{tree_id}")
    def get_tree(
        tree_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_tree(backend.trees.get(ctx, tree_id))

    @app.post("/api/v1/trees/{tree_id}/nodes", status_code=201)
    def add_node(
        tree_id: str,
        body: NodeCreate,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        node = backend.trees.add_node(
            ctx, tree_id, body.kind,
            parent_id=body.parent_id,
            question_id=body.question_id,
            order_key=body.order_key,
            stage=body.stage,
            display_config=body.display_config,
            behavior=BehaviorConfig(body.always_visible, body.always_required),
            rules=[mapper.to_rule(r) for r in body.rules],
        )
        return mapper.map_node(node)

    @app.get("/api/v1/trees/{tree_id}/nodes")
    def list_nodes(
        tree_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        backend.trees.get(ctx, tree_id)
        return {"nodes": [mapper.map_node(n) for n in backend.trees.nodes(tree_id)]}

    @app.post("/api/v1/trees/{tree_id}/nodes/{node_id}/move")
    def move_node(
        tree_id: str,
        node_id: str,
        body: NodeMove,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        node = backend.trees.move_node(ctx, tree_id, node_id, body.after_id, body.before_id)
        return mapper.map_node(node)

    @app.get("/api/v1/trees/{tree_id}/validation")
    def validate_tree(
        tree_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_report(backend.trees.validate(ctx, tree_id))

    @app.post("/api/v1/trees/{tree_id}/publish")
    def publish_tree(
        tree_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_tree(backend.trees.publish(ctx, tree_id))

    @app.post("/api/v1/trees/{tree_id}/versions", status_code=201)
    def new_tree_version(
        tree_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_tree(backend.trees.new_version(ctx, tree_id))

    @app.get("/api/v1/trees/{tree_id}/lineage")
    def tree_lineage(
        tree_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_lineage(backend.trees.lineage(ctx, tree_id))

    # -------------------------------------------------------------------------
    # Scenarios
    # -------------------------------------------------------------------------

    @app.post("/api/v1/scenarios", status_code=201)
    def start_scenario(
        body: ScenarioStart,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.start(
            ctx, body.tree_id,
            scenario_type=body.scenario_type,
            external_id=body.external_id,
            family_id=body.family_id,
            expires_at=body.expires_at,
            scenario_id=body.scenario_id,
            idempotency_key=idempotency_key,
            valid_at=body.valid_at,
        )
        return mapper.map_action(result)

    @app.get("/api/v1/scenarios")
    def list_scenarios(
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return {"scenarios": [mapper.map_state(p) for p in backend.scenarios.scenarios(ctx)]}

    @app.get("/api/v1/scenarios/{scenario_id}")
    def scenario_state(
        scenario_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_state(backend.scenarios.state(ctx, scenario_id))

    @app.get("/api/v1/scenarios/{scenario_id}/nodes")
    def scenario_nodes(
        scenario_id: str,
        include_hidden: bool = False,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        entries = (
            backend.scenarios.availability(ctx, scenario_id) if include_hidden
            else backend.scenarios.available_nodes(ctx, scenario_id)
        )
        return {"nodes": mapper.map_availability(list(entries))}

    @app.post("/api/v1/scenarios/{scenario_id}/answers")
    def provide_answer(
        scenario_id: str,
        body: AnswerIn,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.provide_answer(
            ctx, scenario_id, body.node_id, body.value,
            idempotency_key=idempotency_key,
            valid_at=body.valid_at,
            reason=body.reason,
            expected_version=body.expected_version,
        )
        return mapper.map_action(result)

    @app.delete("/api/v1/scenarios/{scenario_id}/answers/{node_id}")
    def clear_answer(
        scenario_id: str,
        node_id: str,
        reason: Optional[str] = None,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.clear_answer(
            ctx, scenario_id, node_id, reason=reason, idempotency_key=idempotency_key,
        )
        return mapper.map_action(result)

    @app.post("/api/v1/scenarios/{scenario_id}/import")
    def import_answers(
        scenario_id: str,
        body: ImportIn,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.import_answers(ctx, scenario_id, body.answers, idempotency_key=idempotency_key)
        return mapper.map_action(result)

    @app.post("/api/v1/scenarios/{scenario_id}/enter")
    def enter_node(
        scenario_id: str,
        body: NodeRef,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.enter_node(ctx, scenario_id, body.node_id, idempotency_key=idempotency_key)
        return mapper.map_action(result)

    @app.post("/api/v1/scenarios/{scenario_id}/exit")
    def exit_node(
        scenario_id: str,
        body: NodeExit,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.exit_node(
            ctx, scenario_id, body.node_id, body.direction, idempotency_key=idempotency_key,
        )
        return mapper.map_action(result)

    @app.post("/api/v1/scenarios/{scenario_id}/stages/{stage}/complete")
    def complete_stage(
        scenario_id: str,
        stage: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.complete_stage(ctx, scenario_id, stage, idempotency_key=idempotency_key)
        return mapper.map_action(result)

    @app.post("/api/v1/scenarios/{scenario_id}/submit")
    def submit_scenario(
        scenario_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        return mapper.map_action(backend.scenarios.submit(ctx, scenario_id, idempotency_key=idempotency_key))

    @app.post("/api/v1/scenarios/{scenario_id}/complete")
    def complete_scenario(
        scenario_id: str,
        body: CompleteIn,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.complete(
            ctx, scenario_id, body.confirmation, idempotency_key=idempotency_key,
        )
        return mapper.map_action(result)

    @app.post("/api/v1/scenarios/{scenario_id}/cancel")
    def cancel_scenario(
        scenario_id: str,
        body: CancelIn,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.cancel(ctx, scenario_id, body.reason, idempotency_key=idempotency_key)
        return mapper.map_action(result)

    @app.post("/api/v1/scenarios/{scenario_id}/external-data")
    def receive_external_data(
        scenario_id: str,
        body: ExternalDataIn,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.receive_external_data(
            ctx, scenario_id, body.source, body.data, idempotency_key=idempotency_key,
        )
        return mapper.map_action(result)

    @app.post("/api/v1/scenarios/{scenario_id}/family")
    def link_family(
        scenario_id: str,
        body: FamilyLink,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
        idempotency_key: Optional[str] = Header(None),
    ):
        result = backend.scenarios.link_family(ctx, scenario_id, body.family_id, idempotency_key=idempotency_key)
        return mapper.map_action(result)

    @app.get("/api/v1/families/{family_id}")
    def family_status(
        family_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return {"family_id": family_id, "members": backend.scenarios.family_status(ctx, family_id)}

    @app.get("/api/v1/scenarios/{scenario_id}/feed")
    def answer_feed(
        scenario_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return {"scenario_id": scenario_id, "answers": mapper.map_feed(backend.scenarios.answer_feed(ctx, scenario_id))}

    @app.get("/api/v1/scenarios/{scenario_id}/events")
    def scenario_events(
        scenario_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return {"events": [mapper.map_event(e) for e in backend.scenarios.events(ctx, scenario_id)]}

    @app.get("/api/v1/scenarios/{scenario_id}/as-of")
    def scenario_as_of(
        scenario_id: str,
        version: Optional[int] = None,
        at: Optional[datetime] = None,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return mapper.map_state(backend.scenarios.state_as_of(ctx, scenario_id, version=version, at=at))

    @app.get("/api/v1/scenarios/{scenario_id}/answers/{question_code}")
    def answer_at(
        scenario_id: str,
        question_code: str,
        valid_time: datetime,
        as_of: Optional[datetime] = None,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        value = backend.scenarios.answer_at(ctx, scenario_id, question_code, valid_time, as_of)
        return {
            "question_code": question_code,
            "valid_time": valid_time.isoformat(),
            "value": mapper.map_value(value) if value is not None else None,
        }

    @app.get("/api/v1/scenarios/{scenario_id}/verify")
    def verify_scenario(
        scenario_id: str,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        ok, problem = backend.scenarios.verify(ctx, scenario_id)
        return {"scenario_id": scenario_id, "ok": ok, "problem": problem}

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    @app.get("/api/v1/audit")
    def audit_export(
        scenario_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        records = backend.audit.export(ctx.tenant_id, scenario_id=scenario_id, since=since, until=until)
        return {"records": [r.to_dict() for r in records]}

    @app.get("/api/v1/audit/report")
    def audit_report(
        ctx: RequestContext = Depends(get_context),
        backend: ScenarioTreeBackend = Depends(get_backend),
    ):
        return backend.audit.report(ctx.tenant_id)


app = create_app()
