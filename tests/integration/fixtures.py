"""
Integration Test Fixtures

Explicit, deterministic fixtures shared across test modules.
No random generation: every timestamp and identifier is fixed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from scenario_tree.contracts.base import RequestContext
from scenario_tree.contracts.catalog import QuestionScope
from scenario_tree.contracts.conditions import NodeRule, Operand, Operator, RulePurpose
from scenario_tree.contracts.tree import BehaviorConfig, NodeKind
from scenario_tree.contracts.values import DataType
from scenario_tree.engine import BackendConfig, ScenarioTreeBackend
from scenario_tree.navigation.cache import NavigationConfig
from scenario_tree.storage import EventStoreConfig
from scenario_tree.temporal.clock import LogicalClock


# =============================================================================
# FIXED TIMESTAMPS (deterministic)
# =============================================================================

EPOCH = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2026, 1, 1, 10, 5, 0, tzinfo=timezone.utc)
T3 = datetime(2026, 1, 1, 10, 10, 0, tzinfo=timezone.utc)

HOUR = timedelta(hours=1)


# =============================================================================
# CALLERS
# =============================================================================

TENANT_A = "tenant_a"
TENANT_B = "tenant_b"

ALICE = RequestContext(tenant_id=TENANT_A, actor_id="alice", correlation_id="corr_001")
BOB = RequestContext(tenant_id=TENANT_B, actor_id="bob")

API_HEADERS = {"X-Tenant-Id": TENANT_A, "X-Actor-Id": "alice"}


# =============================================================================
# BACKENDS
# =============================================================================

def create_backend(
    at: datetime = T1,
    storage_dir: Optional[str] = None,
    cache_seconds: float = 300.0,
) -> ScenarioTreeBackend:
    """Backend on a manual clock; file storage when a directory is given."""
    storage = (
        EventStoreConfig(backend_type="file", storage_dir=storage_dir)
        if storage_dir else EventStoreConfig()
    )
    config = BackendConfig(
        storage=storage,
        navigation=NavigationConfig(cache_refresh_seconds=cache_seconds, enable_cache=cache_seconds > 0),
    )
    return ScenarioTreeBackend(config, clock=LogicalClock.manual(at))


# =============================================================================
# LOAN PURPOSE TREE
# =============================================================================

@dataclass(frozen=True)
class LoanTree:
    """
    Three questions:
    - loan_purpose (required, "purchase" | "refinance")
    - current_lender (required, visible only when loan_purpose == "refinance")
    - loan_amount (optional, stage "details", validated against a limit)
    """
    tree_id: str
    purpose_node: str
    lender_node: str
    amount_node: str
    purpose_question: str
    lender_question: str
    amount_question: str
    refinance_condition: str
    limit_condition: str


def build_loan_tree(
    backend: ScenarioTreeBackend,
    ctx: RequestContext = ALICE,
    name: str = "Mortgage Application",
    publish: bool = True,
) -> LoanTree:
    catalog = backend.catalog
    purpose = catalog.define(
        ctx, "loan_purpose", DataType.ENUM, QuestionScope.CORE,
        validation_schema={"enum": ["purchase", "refinance"]},
        label="Purpose of the loan",
    )
    lender = catalog.define(ctx, "current_lender", DataType.TEXT, QuestionScope.CORE)
    amount = catalog.define(
        ctx, "loan_amount", DataType.MONEY, QuestionScope.STANDARD,
        validation_schema={"type": "number", "minimum": 1000},
    )

    refinance = backend.conditions.simple(
        Operand.question("loan_purpose"), Operator.EQ, Operand.of("refinance"),
    )
    limit = backend.conditions.simple(
        Operand.question("loan_amount"), Operator.LTE, Operand.of(2000000),
    )

    tree = backend.trees.create_tree(ctx, name)
    purpose_node = backend.trees.add_node(
        ctx, tree.tree_id, NodeKind.QUESTION,
        question_id=purpose.question_id,
        stage="intake",
        behavior=BehaviorConfig(always_required=True),
    )
    lender_node = backend.trees.add_node(
        ctx, tree.tree_id, NodeKind.QUESTION,
        question_id=lender.question_id,
        stage="intake",
        behavior=BehaviorConfig(always_required=True),
        rules=[NodeRule(RulePurpose.VISIBILITY, refinance)],
    )
    amount_node = backend.trees.add_node(
        ctx, tree.tree_id, NodeKind.QUESTION,
        question_id=amount.question_id,
        stage="details",
        rules=[NodeRule(RulePurpose.VALIDATION, limit, action="loan amount above limit")],
    )
    if publish:
        backend.trees.publish(ctx, tree.tree_id)

    return LoanTree(
        tree_id=tree.tree_id,
        purpose_node=purpose_node.node_id,
        lender_node=lender_node.node_id,
        amount_node=amount_node.node_id,
        purpose_question=purpose.question_id,
        lender_question=lender.question_id,
        amount_question=amount.question_id,
        refinance_condition=refinance,
        limit_condition=limit,
    )
