"""
Question Catalog Tests

Identity, lifecycle, protection and lender cascade of catalog questions.
"""

import pytest

from scenario_tree.catalog.registry import QuestionCatalog
from scenario_tree.catalog.validation import check_schema, validate_answer
from scenario_tree.contracts.base import END_OF_TIME
from scenario_tree.contracts.catalog import OwnerType, QuestionScope, QuestionStatus
from scenario_tree.contracts.values import DataType, NumberValue
from scenario_tree.errors import (
    DuplicateError, DuplicateQuestionError, InvalidLifecycleTransition, NotFoundError,
    ProtectedQuestionError, QuestionInUse, ValidationError,
)
from scenario_tree.temporal.clock import LogicalClock

from tests.integration.fixtures import ALICE, BOB, T1, T2, T3


def create_catalog(usage=None):
    return QuestionCatalog(clock=LogicalClock.manual(T1), usage_probe=usage)


def define_custom(catalog, code="favourite_colour", ctx=ALICE):
    return catalog.define(
        ctx, code, DataType.TEXT, QuestionScope.CUSTOM,
        owner_id=ctx.tenant_id, owner_type=OwnerType.TENANT,
    )


class TestDefinition:

    def test_define_assigns_permanent_identity(self):
        catalog = create_catalog()
        question = catalog.define(ALICE, "loan_amount", DataType.MONEY, QuestionScope.CORE)
        assert question.question_id.startswith("q_")
        assert question.version == 1
        assert question.status is QuestionStatus.ACTIVE
        assert question.validity.valid_from == T1
        assert question.validity.valid_to == END_OF_TIME
        assert catalog.get(question.question_id) == question

    def test_duplicate_code_for_same_owner_rejected(self):
        catalog = create_catalog()
        catalog.define(ALICE, "loan_amount", DataType.MONEY, QuestionScope.CORE)
        with pytest.raises(DuplicateQuestionError):
            catalog.define(ALICE, "loan_amount", DataType.NUMBER, QuestionScope.CORE)

    def test_same_code_for_different_owner_allowed(self):
        catalog = create_catalog()
        first = define_custom(catalog, "colour", ALICE)
        second = define_custom(catalog, "colour", BOB)
        assert first.question_id != second.question_id

    def test_empty_code_rejected(self):
        with pytest.raises(ValidationError):
            create_catalog().define(ALICE, "  ", DataType.TEXT, QuestionScope.CORE)

    def test_system_question_has_no_owner(self):
        with pytest.raises(ValidationError):
            create_catalog().define(
                ALICE, "x", DataType.TEXT, QuestionScope.CORE,
                owner_id="tenant_a", owner_type=OwnerType.TENANT,
            )

    def test_custom_question_needs_owner(self):
        with pytest.raises(ValidationError):
            create_catalog().define(ALICE, "x", DataType.TEXT, QuestionScope.CUSTOM)

    def test_lender_question_needs_registered_lender(self):
        catalog = create_catalog()
        with pytest.raises(NotFoundError):
            catalog.define(
                ALICE, "x", DataType.TEXT, QuestionScope.LENDER,
                owner_id="lender_unknown", owner_type=OwnerType.LENDER,
            )

    def test_cannot_define_directly_as_deprecated(self):
        with pytest.raises(InvalidLifecycleTransition):
            create_catalog().define(ALICE, "x", DataType.TEXT, QuestionScope.CORE, status=QuestionStatus.DEPRECATED)

    def test_malformed_schema_rejected_at_definition(self):
        with pytest.raises(ValidationError):
            create_catalog().define(
                ALICE, "x", DataType.NUMBER, QuestionScope.CORE,
                validation_schema={"type": 12},
            )


class TestVersioning:

    def test_new_version_closes_previous_window(self):
        catalog = create_catalog()
        v1 = catalog.define(ALICE, "income", DataType.MONEY, QuestionScope.CORE)
        v2 = catalog.define_version(ALICE, v1.question_id, valid_from=T2, label="Annual income")

        previous = catalog.get(v1.question_id)
        assert v2.version == 2
        assert v2.question_id != v1.question_id
        assert previous.validity.valid_to == T2
        assert previous.replacement_id == v2.question_id
        assert v2.validity.valid_from == T2

    def test_find_resolves_version_by_time(self):
        catalog = create_catalog()
        v1 = catalog.define(ALICE, "income", DataType.MONEY, QuestionScope.CORE)
        v2 = catalog.define_version(ALICE, v1.question_id, valid_from=T2)
        assert catalog.find("income", at=T1).question_id == v1.question_id
        assert catalog.find("income", at=T3).question_id == v2.question_id

    def test_only_latest_version_can_be_versioned(self):
        catalog = create_catalog()
        v1 = catalog.define(ALICE, "income", DataType.MONEY, QuestionScope.CORE)
        catalog.define_version(ALICE, v1.question_id, valid_from=T2)
        with pytest.raises(InvalidLifecycleTransition):
            catalog.define_version(ALICE, v1.question_id, valid_from=T3)

    def test_version_must_start_after_previous(self):
        catalog = create_catalog()
        v1 = catalog.define(ALICE, "income", DataType.MONEY, QuestionScope.CORE)
        with pytest.raises(ValidationError):
            catalog.define_version(ALICE, v1.question_id, valid_from=T1)


class TestLifecycle:

    def test_lifecycle_moves_forward_only(self):
        catalog = create_catalog()
        question = define_custom(catalog)
        catalog.deprecate(ALICE, question.question_id, reason="superseded")
        with pytest.raises(InvalidLifecycleTransition):
            catalog.activate(ALICE, question.question_id)

    def test_draft_can_be_activated(self):
        catalog = create_catalog()
        draft = catalog.define(ALICE, "x", DataType.TEXT, QuestionScope.CORE, status=QuestionStatus.DRAFT)
        assert catalog.activate(ALICE, draft.question_id).status is QuestionStatus.ACTIVE

    def test_deprecate_records_replacement(self):
        catalog = create_catalog()
        old = define_custom(catalog, "old_code")
        new = define_custom(catalog, "new_code")
        deprecated = catalog.deprecate(ALICE, old.question_id, replacement_id=new.question_id)
        assert deprecated.status is QuestionStatus.DEPRECATED
        assert deprecated.replacement_id == new.question_id

    def test_deleted_questions_are_not_resolved(self):
        catalog = create_catalog()
        question = define_custom(catalog)
        catalog.delete(ALICE, question.question_id, reason="unused")
        assert catalog.get(question.question_id).status is QuestionStatus.DELETED
        assert catalog.find(question.code, owner_id=ALICE.tenant_id) is None

    def test_delete_requires_reason(self):
        catalog = create_catalog()
        question = define_custom(catalog)
        with pytest.raises(ValidationError):
            catalog.delete(ALICE, question.question_id, reason="")

    def test_system_questions_are_protected(self):
        catalog = create_catalog()
        core = catalog.define(ALICE, "loan_amount", DataType.MONEY, QuestionScope.CORE)
        with pytest.raises(ProtectedQuestionError):
            catalog.delete(ALICE, core.question_id, reason="cleanup")
        with pytest.raises(ProtectedQuestionError):
            catalog.rename(ALICE, core.question_id, "amount")

    def test_rename_keeps_identity_across_versions(self):
        catalog = create_catalog()
        v1 = define_custom(catalog, "colour")
        v2 = catalog.define_version(ALICE, v1.question_id, valid_from=T2)
        renamed = catalog.rename(ALICE, v2.question_id, "color")
        assert renamed.question_id == v2.question_id
        assert catalog.get(v1.question_id).code == "color"

    def test_rename_to_existing_code_rejected(self):
        catalog = create_catalog()
        first = define_custom(catalog, "colour")
        define_custom(catalog, "color")
        with pytest.raises(DuplicateQuestionError):
            catalog.rename(ALICE, first.question_id, "color")

    def test_question_in_use_cannot_be_archived(self):
        catalog = create_catalog(usage=lambda question_id: 2)
        question = define_custom(catalog)
        with pytest.raises(QuestionInUse):
            catalog.archive(ALICE, question.question_id)
        assert catalog.get(question.question_id).status is QuestionStatus.ACTIVE


class TestLenders:

    def test_archiving_lender_archives_its_questions(self):
        catalog = create_catalog()
        lender = catalog.register_lender(ALICE, "Acme Bank")
        owned = catalog.define(
            ALICE, "acme_ref", DataType.TEXT, QuestionScope.LENDER,
            owner_id=lender.lender_id, owner_type=OwnerType.LENDER,
        )
        archived = catalog.archive_lender(ALICE, lender.lender_id)
        assert [q.question_id for q in archived] == [owned.question_id]
        assert catalog.get(owned.question_id).status is QuestionStatus.ARCHIVED
        assert not catalog.get_lender(ALICE, lender.lender_id).is_active

    def test_lender_archive_is_all_or_nothing(self):
        catalog = create_catalog(usage=lambda question_id: 1)
        lender = catalog.register_lender(ALICE, "Acme Bank")
        owned = catalog.define(
            ALICE, "acme_ref", DataType.TEXT, QuestionScope.LENDER,
            owner_id=lender.lender_id, owner_type=OwnerType.LENDER,
        )
        with pytest.raises(QuestionInUse):
            catalog.archive_lender(ALICE, lender.lender_id)
        assert catalog.get(owned.question_id).status is QuestionStatus.ACTIVE
        assert catalog.get_lender(ALICE, lender.lender_id).is_active

    def test_duplicate_lender_id_rejected(self):
        catalog = create_catalog()
        catalog.register_lender(ALICE, "Acme", lender_id="lender_acme")
        with pytest.raises(DuplicateError):
            catalog.register_lender(ALICE, "Acme again", lender_id="lender_acme")

    def test_lenders_are_tenant_scoped(self):
        catalog = create_catalog()
        lender = catalog.register_lender(ALICE, "Acme")
        with pytest.raises(NotFoundError):
            catalog.get_lender(BOB, lender.lender_id)


class TestAnswerValidation:

    def test_schema_errors_are_listed(self):
        catalog = create_catalog()
        question = catalog.define(
            ALICE, "loan_amount", DataType.MONEY, QuestionScope.CORE,
            validation_schema={"type": "number", "minimum": 1000, "maximum": 5000000},
        )
        with pytest.raises(ValidationError) as excinfo:
            validate_answer(question, "500")
        assert excinfo.value.errors
        assert validate_answer(question, "250000") == validate_answer(question, 250000)
        assert isinstance(validate_answer(question, 250000), NumberValue)

    def test_wrong_type_reported(self):
        catalog = create_catalog()
        question = catalog.define(ALICE, "born", DataType.DATE, QuestionScope.CORE)
        with pytest.raises(ValidationError) as excinfo:
            validate_answer(question, "not a date")
        assert excinfo.value.context["question_code"] == "born"

    def test_check_schema_accepts_valid_schema(self):
        check_schema({"type": "string", "maxLength": 10})
