"""
Bitemporal Query Tests

Two time axes per answer:
- valid time: when the value was true in the real world
- system time: when the log learned it

A back-dated correction changes what is believed about the past without
rewriting what was believed at the time.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from scenario_tree.contracts.state import ScenarioStatus
from scenario_tree.contracts.values import NumberValue
from scenario_tree.errors import NotFoundError

from tests.integration.fixtures import ALICE, BOB, HOUR, T1


MINUTES = timedelta(minutes=1)


@pytest.fixture
def corrected(backend, loan, scenario):
    """
    loan_amount = 100000 recorded at T1 (valid from T1), then one hour
    later a correction to 120000 valid from T1+30m.
    """
    backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, 100000)
    backend.clock.advance(HOUR)
    backend.scenarios.provide_answer(
        ALICE, scenario, loan.amount_node, 120000,
        valid_at=T1 + 30 * MINUTES, reason="correction",
    )
    return scenario


def amount(value):
    return NumberValue(Decimal(value))


class TestValidTime:

    def test_before_correction_window(self, backend, corrected):
        value = backend.scenarios.answer_at(ALICE, corrected, "loan_amount", T1 + 10 * MINUTES)
        assert value == amount(100000)

    def test_after_correction_window(self, backend, corrected):
        value = backend.scenarios.answer_at(ALICE, corrected, "loan_amount", T1 + 40 * MINUTES)
        assert value == amount(120000)

    def test_before_anything_was_true(self, backend, corrected):
        assert backend.scenarios.answer_at(ALICE, corrected, "loan_amount", T1 - HOUR) is None

    def test_unknown_question_code(self, backend, corrected):
        assert backend.scenarios.answer_at(ALICE, corrected, "loan_purpose", T1 + HOUR) is None


class TestSystemTime:

    def test_belief_before_correction_was_recorded(self, backend, corrected):
        value = backend.scenarios.answer_at(
            ALICE, corrected, "loan_amount", T1 + 40 * MINUTES, as_of=T1,
        )
        assert value == amount(100000)

    def test_state_as_of_system_time(self, backend, corrected):
        before = backend.scenarios.state_as_of(ALICE, corrected, at=T1)
        after = backend.scenarios.state_as_of(ALICE, corrected, at=T1 + HOUR)
        assert before.answers[0].value == amount(100000)
        assert before.history == ()
        assert after.answers[0].value == amount(120000)
        assert len(after.history) == 1

    def test_state_as_of_version(self, backend, corrected):
        first = backend.scenarios.state_as_of(ALICE, corrected, version=1)
        assert first.status is ScenarioStatus.DRAFT
        assert first.version == 1

    def test_history_carries_both_windows(self, backend, corrected):
        (entry,) = backend.scenarios.state(ALICE, corrected).history
        assert entry.validity.valid_from == T1
        assert entry.validity.valid_to == T1 + 30 * MINUTES
        assert entry.recorded_from == T1
        assert entry.recorded_to == T1 + HOUR
        assert entry.change_reason == "correction"

    def test_other_tenant_cannot_travel(self, backend, corrected):
        with pytest.raises(NotFoundError):
            backend.scenarios.answer_at(BOB, corrected, "loan_amount", T1)


class TestOverlappingCorrections:

    def test_latest_recorded_belief_wins(self, backend, loan, scenario):
        backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, 100000)
        backend.clock.advance(HOUR)
        backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, 110000, valid_at=T1 + 20 * MINUTES)
        backend.clock.advance(HOUR)
        backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, 105000, valid_at=T1 + 10 * MINUTES)

        assert backend.scenarios.answer_at(ALICE, scenario, "loan_amount", T1 + 15 * MINUTES) == amount(105000)
        assert backend.scenarios.answer_at(ALICE, scenario, "loan_amount", T1 + 5 * MINUTES) == amount(100000)

    def test_correction_before_original_keeps_window_ordered(self, backend, loan, scenario):
        backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, 100000)
        backend.scenarios.provide_answer(ALICE, scenario, loan.amount_node, 90000, valid_at=T1 - HOUR)
        (entry,) = backend.scenarios.state(ALICE, scenario).history
        assert entry.validity.valid_to >= entry.validity.valid_from
