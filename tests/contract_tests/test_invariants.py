"""
Property Tests for Engine Contracts
Verifies condition algebra, totality of evaluation, sibling ordering and
projection determinism over generated inputs.
"""

from datetime import date
import logging
from decimal import Decimal

from hypothesis import given, settings, strategies as st
from hypothesis.strategies import composite

from scenario_tree.conditions.engine import ConditionEngine, EvaluationContext
from scenario_tree.conditions.store import ConditionStore
from scenario_tree.contracts.base import ActorType, content_hash
from scenario_tree.contracts.conditions import LogicalOperator, Operand, Operator, SimpleCondition
from scenario_tree.contracts.events import EventType, ScenarioEvent
from scenario_tree.contracts.values import from_plain
from scenario_tree.temporal.projector import apply, empty, project
from scenario_tree.tree.ordering import key_between

from tests.integration.fixtures import T1

# =============================================================================
# STRATEGIES (Generators)
# =============================================================================

CODES = ("q1", "q2", "q3")

json_scalars = st.one_of(
    st.text(alphabet="abc01 -", max_size=6),
    st.integers(min_value=-10**6, max_value=10**6),
    st.floats(allow_nan=False, allow_infinity=False, min_value=-1e6, max_value=1e6),
    st.booleans(),
)
plain_values = st.one_of(
    json_scalars,
    st.dates(min_value=date(2000, 1, 1), max_value=date(2050, 1, 1)),
    st.lists(json_scalars, max_size=3),
)


@composite
def answer_maps(draw):
    """question code -> tagged value, some codes unanswered."""
    answers = {}
    for code in CODES:
        raw = draw(st.one_of(st.none(), plain_values))
        if raw is not None:
            answers[code] = from_plain(raw)
    return answers


@composite
def operands(draw, depth=0):
    choice = draw(st.integers(min_value=0, max_value=2 if depth < 2 else 1))
    if choice == 0:
        return Operand.question(draw(st.sampled_from(CODES + ("unknown",))))
    if choice == 1:
        return Operand.of(draw(plain_values))
    function = draw(st.sampled_from(("add", "sub", "mul", "div", "min", "max", "sum", "len", "coalesce")))
    args = draw(st.lists(operands(depth=depth + 1), min_size=1, max_size=3))
    return Operand.expression(function, *args)


@composite
def simple_conditions(draw, store):
    operator = draw(st.sampled_from(list(Operator)))
    left = draw(operands())
    if operator in (Operator.EXISTS, Operator.NOT_EXISTS):
        return store.simple(left, operator)
    return store.simple(left, operator, draw(operands()))


@composite
def event_streams(draw):
    """Event sequences, valid or not, for one scenario."""
    builders = {
        EventType.SCENARIO_STARTED: lambda: {"tree_id": "tree_1"},
        EventType.NODE_ENTERED: lambda: {"node_id": draw(st.sampled_from(("n1", "n2")))},
        EventType.NODE_EXITED: lambda: {
            "node_id": "n1",
            "direction": draw(st.sampled_from(("forward", "back", "skip", "sideways"))),
        },
        EventType.ANSWER_PROVIDED: lambda: {
            "node_id": "n1",
            "question_id": draw(st.sampled_from(("q1", "q2"))),
            "value": {"kind": "text", "value": draw(st.text(max_size=5))},
        },
        EventType.ANSWER_CLEARED: lambda: {"node_id": "n1", "question_id": draw(st.sampled_from(("q1", "q2")))},
        EventType.VALIDATION_FAILED: lambda: {"node_id": "n1", "errors": ["too high"]},
        EventType.VALIDATION_PASSED: lambda: {"node_id": "n1"},
        EventType.STAGE_COMPLETED: lambda: {"stage": "intake"},
        EventType.SCENARIO_SUBMITTED: lambda: {"final_answers": {}},
        EventType.SCENARIO_COMPLETED: lambda: {},
        EventType.SCENARIO_CANCELLED: lambda: {"reason": "withdrawn"},
        EventType.EXTERNAL_DATA_RECEIVED: lambda: {"source": "bureau", "data": draw(st.sampled_from(({"score": 1}, [1])))},
        EventType.FAMILY_LINKED: lambda: {"family_id": "fam_1"},
    }
    types = draw(st.lists(st.sampled_from(list(EventType)), min_size=1, max_size=12))
    events = []
    previous = ""
    for sequence, event_type in enumerate(types, start=1):
        payload = builders[event_type]() if draw(st.booleans()) or sequence == 1 else {}
        event = ScenarioEvent.create(
            event_id=f"evt_{sequence}",
            scenario_id="scn_1",
            tenant_id="tenant_a",
            sequence=sequence,
            event_type=event_type,
            payload=payload,
            recorded_at=T1,
            actor_id="alice",
            actor_type=ActorType.USER,
            previous_hash=previous,
        )
        previous = event.entry_hash
        events.append(event)
    return events


# =============================================================================
# CONDITION ALGEBRA
# =============================================================================

class TestConditionAlgebra:

    @given(answer_maps())
    def test_empty_and_is_true_empty_or_is_false(self, answers):
        store = ConditionStore()
        engine = ConditionEngine(store)
        context = EvaluationContext(answers=answers)
        assert engine.evaluate(store.compound(LogicalOperator.AND, []), context) is True
        assert engine.evaluate(store.compound(LogicalOperator.OR, []), context) is False
        assert engine.evaluate(store.compound(LogicalOperator.XOR, []), context) is False

    @settings(max_examples=200)
    @given(st.data(), answer_maps())
    def test_double_negation(self, data, answers):
        store = ConditionStore()
        engine = ConditionEngine(store)
        condition = data.draw(simple_conditions(store))
        twice = store.compound(LogicalOperator.NOT, [store.compound(LogicalOperator.NOT, [condition])])
        context = EvaluationContext(answers=answers, today=date(2026, 1, 1))
        assert engine.evaluate(twice, context) == engine.evaluate(condition, context)

    @settings(max_examples=300)
    @given(st.data(), answer_maps(), st.one_of(st.none(), st.dates()))
    def test_evaluation_is_total(self, data, answers, today):
        store = ConditionStore()
        engine = ConditionEngine(store)
        children = data.draw(st.lists(simple_conditions(store), min_size=1, max_size=3))
        operator = data.draw(st.sampled_from([LogicalOperator.AND, LogicalOperator.OR, LogicalOperator.XOR]))
        root = store.compound(operator, children)
        context = EvaluationContext(answers=answers, today=today)
        assert engine.evaluate(root, context) in (True, False)

    @given(answer_maps())
    def test_commutative_operators_ignore_child_order(self, answers):
        store = ConditionStore()
        engine = ConditionEngine(store)
        first = store.simple(Operand.question("q1"), Operator.EXISTS)
        second = store.simple(Operand.question("q2"), Operator.NOT_EXISTS)
        context = EvaluationContext(answers=answers)
        for operator in (LogicalOperator.AND, LogicalOperator.OR, LogicalOperator.XOR):
            forward = store.compound(operator, [first, second])
            backward = store.compound(operator, [second, first])
            assert forward == backward
            assert engine.evaluate(forward, context) == engine.evaluate(backward, context)

    def test_unknown_condition_is_false(self):
        engine = ConditionEngine(ConditionStore())
        assert engine.evaluate("cond_missing", EvaluationContext()) is False

    def test_malformed_registered_condition_is_false(self, caplog):
        store = ConditionStore()
        broken = SimpleCondition(condition_id="cond_broken", left=None, operator=Operator.EQ, right=Operand.of(1))
        store.register(broken)
        with caplog.at_level(logging.WARNING, logger="scenario_tree.conditions.engine"):
            assert ConditionEngine(store).evaluate("cond_broken", EvaluationContext()) is False
        assert "cond_broken" in caplog.text


# =============================================================================
# SIBLING ORDERING
# =============================================================================

decimals = st.decimals(
    min_value=Decimal("-1000000"), max_value=Decimal("1000000"),
    allow_nan=False, allow_infinity=False, places=4,
)


class TestFractionalOrdering:

    @given(decimals, decimals)
    def test_key_strictly_between(self, a, b):
        if a == b:
            return
        low, high = min(a, b), max(a, b)
        key = key_between(low, high)
        assert low < key < high

    @given(decimals)
    def test_open_ends(self, k):
        assert key_between(None, k) < k
        assert key_between(k, None) > k

    @given(decimals, st.integers(min_value=1, max_value=40))
    def test_repeated_inserts_never_collide(self, start, count):
        high = start + 1
        keys = [start]
        for _ in range(count):
            keys.append(key_between(keys[-1], high))
        assert keys == sorted(set(keys))
        assert keys[-1] < high


# =============================================================================
# PROJECTION
# =============================================================================

class TestProjectionDeterminism:

    @settings(max_examples=200)
    @given(event_streams())
    def test_apply_never_raises_and_replay_is_deterministic(self, events):
        first = project(events)
        second = project(events)
        assert first.state_hash == second.state_hash
        assert first.version == events[-1].sequence

    @given(event_streams())
    def test_incremental_equals_full(self, events):
        incremental = empty("scn_1")
        for event in events:
            incremental = apply(incremental, event)
        assert incremental.state_hash == project(events).state_hash

    @given(event_streams())
    def test_state_hash_is_content_hash(self, events):
        projection = project(events)
        assert projection.state_hash == content_hash(projection.to_content())
