"""
Scenario Service Integration Tests

End-to-end runtime behavior over the loan-purpose tree:
answers, conditional questions, validation follow-ups, lifecycle,
idempotency, tenancy and reload from durable storage.
"""

import pytest

from scenario_tree.contracts.catalog import QuestionScope
from scenario_tree.contracts.conditions import NodeRule, Operand, Operator, RulePurpose
from scenario_tree.contracts.events import AnswerSource, EventType, ExitDirection
from scenario_tree.contracts.state import ScenarioStatus, ScenarioType
from scenario_tree.contracts.tree import BehaviorConfig, NodeKind
from scenario_tree.contracts.values import DataType
from scenario_tree.errors import (
    ConcurrentModificationError, DuplicateError, InvalidStateTransition,
    NotFoundError, QuestionInUse, ValidationError,
)
from scenario_tree.scenarios.service import ScenarioService
from scenario_tree.storage import FileEventStore
from scenario_tree.temporal.event_log import ScenarioEventLog

from tests.integration.fixtures import ALICE, BOB, HOUR, T1, build_loan_tree, create_backend


def event_types(result):
    return [e.event_type for e in result.events]


# =============================================================================
# HAPPY PATHS
# =============================================================================

class TestPurchaseAndRefinance:

    def test_purchase_submits_without_lender(self, backend, loan, scenario):
        service = backend.scenarios
        answered = service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase")
        assert answered.state.status is ScenarioStatus.IN_PROGRESS

        submitted = service.submit(ALICE, scenario)
        assert submitted.state.status is ScenarioStatus.SUBMITTED
        assert set(submitted.event.payload["final_answers"]) == {"loan_purpose"}

    def test_refinance_requires_current_lender(self, backend, loan, scenario):
        service = backend.scenarios
        service.provide_answer(ALICE, scenario, loan.purpose_node, "refinance")
        with pytest.raises(ValidationError) as excinfo:
            service.submit(ALICE, scenario)
        assert excinfo.value.errors == ("required: current_lender",)

        service.provide_answer(ALICE, scenario, loan.lender_node, "Acme Bank")
        submitted = service.submit(ALICE, scenario)
        assert set(submitted.event.payload["final_answers"]) == {"loan_purpose", "current_lender"}

    def test_hidden_answer_is_kept_but_not_fed(self, backend, loan, scenario):
        service = backend.scenarios
        service.provide_answer(ALICE, scenario, loan.purpose_node, "refinance")
        service.provide_answer(ALICE, scenario, loan.lender_node, "Acme Bank")
        service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase")

        assert service.state(ALICE, scenario).answer_for(loan.lender_question) is not None
        assert set(service.answer_feed(ALICE, scenario)) == {"loan_purpose"}
        submitted = service.submit(ALICE, scenario)
        assert "current_lender" not in submitted.event.payload["final_answers"]

    def test_submit_from_draft_rejected(self, backend, scenario):
        with pytest.raises(InvalidStateTransition):
            backend.scenarios.submit(ALICE, scenario)

    def test_action_result_carries_availability(self, backend, loan, scenario):
        result = backend.scenarios.provide_answer(ALICE, scenario, loan.purpose_node, "refinance")
        visible = {a.node_id for a in result.availability if a.visible}
        assert loan.lender_node in visible


# =============================================================================
# VALIDATION
# =============================================================================

class TestAnswerValidation:

    def test_validation_rule_failure_is_recorded(self, backend, loan, scenario):
        result = backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, 2500000)
        assert event_types(result) == [EventType.ANSWER_PROVIDED, EventType.VALIDATION_FAILED]
        provided, failed = result.events
        assert failed.causation_id == provided.event_id
        answer = result.state.answer_for(loan.amount_question)
        assert not answer.is_valid
        assert answer.validation_errors == ("loan amount above limit",)

    def test_validation_rule_pass_is_recorded(self, backend, loan, scenario):
        result = backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, "250000")
        assert event_types(result) == [EventType.ANSWER_PROVIDED, EventType.VALIDATION_PASSED]
        assert result.state.answer_for(loan.amount_question).is_valid

    def test_schema_rejection_leaves_no_trace(self, backend, loan, scenario):
        with pytest.raises(ValidationError) as excinfo:
            backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, 500)
        assert excinfo.value.errors
        assert backend.event_log.version("tenant_a", scenario) == 1

    def test_wrong_type_rejected(self, backend, loan, scenario):
        with pytest.raises(ValidationError):
            backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, "a lot")

    def test_enum_outside_choices_rejected(self, backend, loan, scenario):
        with pytest.raises(ValidationError):
            backend.scenarios.provide_answer(ALICE, scenario, loan.purpose_node, "holiday")

    def test_answer_to_hidden_node_rejected(self, backend, loan, scenario):
        with pytest.raises(ValidationError) as excinfo:
            backend.scenarios.provide_answer(ALICE, scenario, loan.lender_node, "Acme Bank")
        assert excinfo.value.errors == (f"blocked by {loan.refinance_condition}",)
        assert backend.event_log.version("tenant_a", scenario) == 1

    def test_unknown_node_rejected(self, backend, scenario):
        with pytest.raises(NotFoundError):
            backend.scenarios.provide_answer(ALICE, scenario, "node_missing", "x")

    def test_clear_answer(self, backend, loan, scenario):
        service = backend.scenarios
        service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase")
        cleared = service.clear_answer(ALICE, scenario, loan.purpose_node, reason="changed mind")
        assert cleared.state.answers == ()
        assert cleared.state.history[0].change_reason == "changed mind"
        with pytest.raises(NotFoundError):
            service.clear_answer(ALICE, scenario, loan.purpose_node)


@pytest.fixture
def capped(backend):
    """Published tree with one required question `amt` that must stay at or below 100."""
    amt = backend.catalog.define(ALICE, "amt", DataType.NUMBER, QuestionScope.STANDARD)
    cap = backend.conditions.simple(Operand.question("amt"), Operator.LTE, Operand.of(100))
    tree = backend.trees.create_tree(ALICE, "Capped")
    node = backend.trees.add_node(
        ALICE, tree.tree_id, NodeKind.QUESTION,
        question_id=amt.question_id,
        stage="amount",
        behavior=BehaviorConfig(always_required=True),
        rules=[NodeRule(RulePurpose.VALIDATION, cap, action="amt above cap")],
    )
    backend.trees.publish(ALICE, tree.tree_id)
    scenario_id = backend.scenarios.start(ALICE, tree.tree_id, scenario_id="scn_capped").state.scenario_id
    return scenario_id, node.node_id


class TestRequiredAnswersMustBeValid:

    def test_submit_rejects_failed_validation(self, backend, capped):
        scenario_id, node_id = capped
        service = backend.scenarios
        service.provide_answer(ALICE, scenario_id, node_id, 500)
        with pytest.raises(ValidationError) as excinfo:
            service.submit(ALICE, scenario_id)
        assert excinfo.value.errors == ("invalid: amt",)
        assert service.state(ALICE, scenario_id).status is ScenarioStatus.IN_PROGRESS

    def test_corrected_answer_submits(self, backend, capped):
        scenario_id, node_id = capped
        service = backend.scenarios
        service.provide_answer(ALICE, scenario_id, node_id, 500)
        service.provide_answer(ALICE, scenario_id, node_id, 50)
        submitted = service.submit(ALICE, scenario_id)
        assert submitted.state.status is ScenarioStatus.SUBMITTED

    def test_stage_completion_rejects_failed_validation(self, backend, capped):
        scenario_id, node_id = capped
        backend.scenarios.provide_answer(ALICE, scenario_id, node_id, 500)
        with pytest.raises(ValidationError) as excinfo:
            backend.scenarios.complete_stage(ALICE, scenario_id, "amount")
        assert excinfo.value.errors == ("invalid: amt",)

    def test_availability_reports_validity(self, backend, capped):
        scenario_id, node_id = capped
        result = backend.scenarios.provide_answer(ALICE, scenario_id, node_id, 500)
        (entry,) = [a for a in result.availability if a.node_id == node_id]
        assert entry.answered
        assert not entry.valid


# =============================================================================
# IDEMPOTENCY & CONCURRENCY
# =============================================================================

class TestIdempotency:

    def test_repeated_key_appends_nothing(self, backend, loan, scenario):
        service = backend.scenarios
        first = service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase", idempotency_key="k1")
        version = backend.event_log.version("tenant_a", scenario)
        again = service.provide_answer(ALICE, scenario, loan.purpose_node, "refinance", idempotency_key="k1")
        assert again.event.event_id == first.events[0].event_id
        assert backend.event_log.version("tenant_a", scenario) == version
        assert service.answer_feed(ALICE, scenario)["loan_purpose"].value == "purchase"

    def test_repeated_start_returns_original(self, backend, loan):
        first = backend.scenarios.start(ALICE, loan.tree_id, scenario_id="scn_x", idempotency_key="start")
        again = backend.scenarios.start(ALICE, loan.tree_id, scenario_id="scn_x", idempotency_key="start")
        assert again.event.event_id == first.event.event_id

    def test_repeated_start_without_scenario_id(self, backend, loan):
        first = backend.scenarios.start(ALICE, loan.tree_id, idempotency_key="start-once")
        again = backend.scenarios.start(ALICE, loan.tree_id, idempotency_key="start-once")
        assert again.state.scenario_id == first.state.scenario_id
        assert again.event.event_id == first.event.event_id
        assert len(backend.scenarios.scenarios(ALICE)) == 1

    def test_expected_version(self, backend, loan, scenario):
        service = backend.scenarios
        with pytest.raises(ConcurrentModificationError):
            service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase", expected_version=0)
        result = service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase", expected_version=1)
        assert result.event.sequence == 2


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycle:

    def test_cancel_requires_reason(self, backend, scenario):
        with pytest.raises(ValidationError):
            backend.scenarios.cancel(ALICE, scenario, reason="")

    def test_cancelled_scenario_rejects_answers(self, backend, loan, scenario):
        backend.scenarios.cancel(ALICE, scenario, reason="withdrawn")
        with pytest.raises(InvalidStateTransition):
            backend.scenarios.provide_answer(ALICE, scenario, loan.purpose_node, "purchase")

    def test_complete_only_after_submit(self, backend, loan, scenario):
        service = backend.scenarios
        with pytest.raises(InvalidStateTransition):
            service.complete(ALICE, scenario)
        service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase")
        service.submit(ALICE, scenario)
        completed = service.complete(ALICE, scenario, confirmation={"reference": "LN-1"})
        assert completed.state.status is ScenarioStatus.COMPLETED
        with pytest.raises(InvalidStateTransition):
            service.cancel(ALICE, scenario, reason="too late")

    def test_submitted_scenario_can_be_cancelled(self, backend, loan, scenario):
        service = backend.scenarios
        service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase")
        service.submit(ALICE, scenario)
        assert service.cancel(ALICE, scenario, reason="declined").state.status is ScenarioStatus.CANCELLED

    def test_expire_overdue(self, backend, loan):
        service = backend.scenarios
        service.start(ALICE, loan.tree_id, scenario_id="scn_due", expires_at=T1 + HOUR)
        service.start(ALICE, loan.tree_id, scenario_id="scn_open")
        backend.clock.advance(2 * HOUR)

        assert service.expire_overdue() == ["scn_due"]
        state = service.state(ALICE, "scn_due")
        assert state.status is ScenarioStatus.CANCELLED
        last = service.events(ALICE, "scn_due")[-1]
        assert last.payload["reason"] == "expired"
        assert last.actor_id == "system"
        assert service.expire_overdue() == []

    def test_unpublished_tree_only_for_previews(self, backend):
        draft = build_loan_tree(backend, name="Draft", publish=False)
        with pytest.raises(InvalidStateTransition):
            backend.scenarios.start(ALICE, draft.tree_id)
        preview = backend.scenarios.start(ALICE, draft.tree_id, scenario_type=ScenarioType.PREVIEW)
        assert preview.state.scenario_type is ScenarioType.PREVIEW

    def test_external_id_is_unique_per_tenant(self, backend, loan):
        backend.scenarios.start(ALICE, loan.tree_id, external_id="crm-42")
        with pytest.raises(DuplicateError):
            backend.scenarios.start(ALICE, loan.tree_id, external_id="crm-42")

    def test_question_in_use_cannot_be_archived(self, backend, loan, scenario):
        backend.scenarios.provide_answer(ALICE, scenario, loan.purpose_node, "purchase")
        with pytest.raises(QuestionInUse):
            backend.catalog.archive(ALICE, loan.purpose_question)
        backend.scenarios.cancel(ALICE, scenario, reason="withdrawn")
        backend.catalog.archive(ALICE, loan.purpose_question)


# =============================================================================
# NAVIGATION ACTIONS
# =============================================================================

class TestNavigationActions:

    def test_enter_and_exit(self, backend, loan, scenario):
        service = backend.scenarios
        entered = service.enter_node(ALICE, scenario, loan.purpose_node)
        assert entered.state.navigation.current_node_id == loan.purpose_node
        assert entered.state.navigation.current_stage == "intake"
        exited = service.exit_node(ALICE, scenario, loan.purpose_node, ExitDirection.FORWARD)
        assert exited.state.navigation.completed == (loan.purpose_node,)
        assert exited.state.navigation.current_node_id is None

    def test_hidden_node_cannot_be_entered(self, backend, loan, scenario):
        with pytest.raises(ValidationError):
            backend.scenarios.enter_node(ALICE, scenario, loan.lender_node)

    def test_complete_stage_requires_its_questions(self, backend, loan, scenario):
        service = backend.scenarios
        with pytest.raises(ValidationError):
            service.complete_stage(ALICE, scenario, "intake")
        service.provide_answer(ALICE, scenario, loan.purpose_node, "purchase")
        completed = service.complete_stage(ALICE, scenario, "intake")
        assert completed.state.navigation.completed_stages == ("intake",)
        with pytest.raises(NotFoundError):
            service.complete_stage(ALICE, scenario, "no_such_stage")


# =============================================================================
# IMPORT
# =============================================================================

class TestImport:

    def test_import_appends_one_event_per_field(self, backend, scenario):
        result = backend.scenarios.import_answers(ALICE, scenario, {
            "loan_purpose": "refinance",
            "current_lender": "Acme Bank",
            "loan_amount": 300000,
        })
        provided = [e for e in result.events if e.event_type is EventType.ANSWER_PROVIDED]
        assert len(provided) == 3
        assert {e.payload["source"] for e in provided} == {AnswerSource.IMPORT.value}
        assert event_types(result)[-1] is EventType.VALIDATION_PASSED
        assert set(backend.scenarios.answer_feed(ALICE, scenario)) == {
            "loan_purpose", "current_lender", "loan_amount",
        }

    def test_imported_value_runs_validation_rules(self, backend, loan, scenario):
        result = backend.scenarios.import_answers(ALICE, scenario, {"loan_amount": 2500000})
        assert event_types(result) == [EventType.ANSWER_PROVIDED, EventType.VALIDATION_FAILED]
        provided, failed = result.events
        assert failed.causation_id == provided.event_id
        answer = result.state.answer_for(loan.amount_question)
        assert not answer.is_valid
        assert answer.validation_errors == ("loan amount above limit",)

    def test_repeated_import_key_appends_nothing(self, backend, scenario):
        first = backend.scenarios.import_answers(ALICE, scenario, {"loan_amount": 2500000}, idempotency_key="imp")
        version = backend.event_log.version("tenant_a", scenario)
        again = backend.scenarios.import_answers(ALICE, scenario, {"loan_amount": 2500000}, idempotency_key="imp")
        assert [e.event_id for e in again.events] == [e.event_id for e in first.events]
        assert backend.event_log.version("tenant_a", scenario) == version

    def test_import_is_all_or_nothing(self, backend, scenario):
        with pytest.raises(ValidationError) as excinfo:
            backend.scenarios.import_answers(ALICE, scenario, {
                "loan_purpose": "refinance",
                "loan_amount": 5,
                "favourite_colour": "blue",
            })
        messages = " ".join(excinfo.value.errors)
        assert "loan_amount" in messages
        assert "favourite_colour" in messages
        assert backend.event_log.version("tenant_a", scenario) == 1

    def test_empty_import_appends_nothing(self, backend, scenario):
        result = backend.scenarios.import_answers(ALICE, scenario, {})
        assert result.events == ()


# =============================================================================
# EXTERNAL DATA, FAMILIES, TENANCY
# =============================================================================

class TestExternalDataAndFamilies:

    def test_external_data_recorded(self, backend, scenario):
        result = backend.scenarios.receive_external_data(ALICE, scenario, "bureau", {"score": 710})
        assert result.state.external_data[0].data == {"score": 710}
        with pytest.raises(ValidationError):
            backend.scenarios.receive_external_data(ALICE, scenario, "bureau", [710])

    def test_family_members_and_relinking(self, backend, loan):
        service = backend.scenarios
        service.start(ALICE, loan.tree_id, scenario_id="scn_a", family_id="fam_1")
        service.start(ALICE, loan.tree_id, scenario_id="scn_b", family_id="fam_1")
        assert service.family_status(ALICE, "fam_1") == {"scn_a": "DRAFT", "scn_b": "DRAFT"}

        service.link_family(ALICE, "scn_b", "fam_2")
        assert set(service.family_status(ALICE, "fam_1")) == {"scn_a"}
        assert service.state(ALICE, "scn_b").family_id == "fam_2"
        with pytest.raises(NotFoundError):
            service.family_status(ALICE, "fam_unknown")


class TestTenancy:

    def test_scenarios_of_other_tenants_do_not_exist(self, backend, loan, scenario):
        with pytest.raises(NotFoundError):
            backend.scenarios.state(BOB, scenario)
        with pytest.raises(NotFoundError):
            backend.scenarios.provide_answer(BOB, scenario, loan.purpose_node, "purchase")
        assert backend.scenarios.scenarios(BOB) == []
        assert [p.scenario_id for p in backend.scenarios.scenarios(ALICE)] == [scenario]

    def test_other_tenant_cannot_start_on_private_tree(self, backend, loan):
        with pytest.raises(NotFoundError):
            backend.scenarios.start(BOB, loan.tree_id)


# =============================================================================
# DURABILITY
# =============================================================================

class TestDurability:

    def test_reload_from_file_store(self, tmp_path):
        backend = create_backend(storage_dir=str(tmp_path))
        loan = build_loan_tree(backend)
        service = backend.scenarios
        service.start(ALICE, loan.tree_id, scenario_id="scn_durable", external_id="crm-7")
        service.provide_answer(ALICE, "scn_durable", loan.purpose_node, "refinance")
        service.provide_answer(ALICE, "scn_durable", loan.lender_node, "Acme Bank")
        before = service.state(ALICE, "scn_durable")

        reloaded = ScenarioService(
            backend.catalog,
            backend.trees,
            ScenarioEventLog(FileEventStore(str(tmp_path)), clock=backend.clock),
            backend.navigation,
            clock=backend.clock,
        )
        after = reloaded.state(ALICE, "scn_durable")
        assert after.state_hash == before.state_hash
        assert reloaded.verify(ALICE, "scn_durable") == (True, None)
        with pytest.raises(DuplicateError):
            reloaded.start(ALICE, loan.tree_id, external_id="crm-7")
