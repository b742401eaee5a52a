"""
Event Log Tests

Append-only semantics, sequencing, idempotency, hash chaining and
durable reload of the scenario event log.
"""

import json
import threading

import pytest

from scenario_tree.contracts.base import ErrorCode
from scenario_tree.contracts.events import EventType
from scenario_tree.errors import (
    ConcurrentModificationError, ImmutableLogViolation, InvalidStateTransition,
    TimelineCorruption, ValidationError,
)
from scenario_tree.storage import (
    EventStoreConfig, FileEventStore, InMemoryEventStore, create_event_store,
)
from scenario_tree.temporal.clock import LogicalClock
from scenario_tree.temporal.event_log import ScenarioEventLog

from tests.integration.fixtures import ALICE, BOB, HOUR, T1, T2, T3


def create_log(store=None):
    return ScenarioEventLog(store or InMemoryEventStore(), clock=LogicalClock.manual(T1))


def start(log, scenario_id="scn_1", ctx=ALICE):
    return log.append(ctx, scenario_id, EventType.SCENARIO_STARTED, {"tree_id": "tree_1"})


def answer(log, value, scenario_id="scn_1", **kwargs):
    return log.append(
        ALICE, scenario_id, EventType.ANSWER_PROVIDED,
        {"node_id": "node_1", "question_id": "q_1", "value": {"kind": "text", "value": value}},
        **kwargs,
    )


class TestAppend:

    def test_sequences_are_contiguous_from_one(self):
        log = create_log()
        events = [start(log), answer(log, "a"), answer(log, "b")]
        assert [e.sequence for e in events] == [1, 2, 3]
        assert log.version("tenant_a", "scn_1") == 3

    def test_events_are_hash_chained(self):
        log = create_log()
        first = start(log)
        second = answer(log, "a")
        assert first.previous_hash == ""
        assert second.previous_hash == first.entry_hash
        assert log.head_hash("tenant_a", "scn_1") == second.entry_hash
        assert log.verify_integrity("tenant_a", "scn_1") == (True, None)

    def test_context_is_recorded(self):
        log = create_log()
        event = start(log)
        assert event.actor_id == "alice"
        assert event.correlation_id == "corr_001"
        assert event.recorded_at == T1
        assert event.valid_at == T1

    def test_valid_time_can_be_back_dated(self):
        log = create_log()
        start(log)
        event = answer(log, "a", valid_at=T1 - HOUR)
        assert event.valid_at == T1 - HOUR
        assert event.recorded_at == T1

    def test_first_event_must_start_the_scenario(self):
        log = create_log()
        with pytest.raises(InvalidStateTransition):
            answer(log, "a")
        assert not log.exists("tenant_a", "scn_1")

    def test_scenario_starts_only_once(self):
        log = create_log()
        start(log)
        with pytest.raises(InvalidStateTransition):
            start(log)

    def test_missing_payload_fields_rejected(self):
        log = create_log()
        with pytest.raises(ValidationError):
            log.append(ALICE, "scn_1", EventType.SCENARIO_STARTED, {})

    def test_expected_version_guards_concurrent_writers(self):
        log = create_log()
        start(log)
        answer(log, "a", expected_version=1)
        with pytest.raises(ConcurrentModificationError) as excinfo:
            answer(log, "b", expected_version=1)
        assert excinfo.value.current_version == 2

    def test_update_and_delete_are_refused(self):
        log = create_log()
        start(log)
        with pytest.raises(ImmutableLogViolation):
            log.update("scn_1")
        with pytest.raises(ImmutableLogViolation):
            log.delete("scn_1")

    def test_payload_is_stored_as_plain_json(self):
        log = create_log()
        event = log.append(ALICE, "scn_1", EventType.SCENARIO_STARTED, {"tree_id": "t", "when": T2})
        assert event.payload["when"] == T2.isoformat()


class TestIdempotency:

    def test_repeated_key_returns_original_event(self):
        log = create_log()
        start(log)
        first = answer(log, "a", idempotency_key="k1")
        again = answer(log, "changed", idempotency_key="k1")
        assert again == first
        assert log.version("tenant_a", "scn_1") == 2
        assert log.find_by_key("tenant_a", "scn_1", "k1") == first

    def test_keys_are_scoped_per_scenario(self):
        log = create_log()
        start(log, "scn_1")
        start(log, "scn_2")
        a = answer(log, "a", scenario_id="scn_1", idempotency_key="k")
        b = answer(log, "a", scenario_id="scn_2", idempotency_key="k")
        assert a.event_id != b.event_id

    def test_concurrent_appends_keep_sequence_contiguous(self):
        log = ScenarioEventLog(InMemoryEventStore(), clock=LogicalClock.live())
        start(log)

        def worker(index):
            for i in range(20):
                answer(log, f"{index}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        events = log.replay("tenant_a", "scn_1")
        assert [e.sequence for e in events] == list(range(1, 82))
        assert log.verify_integrity("tenant_a", "scn_1")[0]


class TestReads:

    def test_tenants_are_isolated(self):
        log = create_log()
        start(log, "scn_1", ALICE)
        start(log, "scn_1", BOB)
        assert len(log.replay("tenant_a", "scn_1")) == 1
        assert log.scenario_ids("tenant_b") == ["scn_1"]
        assert all(e.tenant_id == "tenant_b" for e in log.all_events("tenant_b"))

    def test_replay_windows(self):
        clock = LogicalClock.manual(T1)
        log = ScenarioEventLog(InMemoryEventStore(), clock=clock)
        start(log)
        clock.advance(T2 - T1)
        answer(log, "a")
        clock.advance(T3 - T2)
        answer(log, "b")
        assert len(log.replay("tenant_a", "scn_1", up_to_version=2)) == 2
        assert len(log.replay("tenant_a", "scn_1", as_of=T2)) == 2
        assert log.replay("tenant_a", "scn_missing") == ()


class TestFileStore:

    def test_reload_restores_streams(self, tmp_path):
        log = create_log(FileEventStore(str(tmp_path)))
        start(log)
        answer(log, "a", idempotency_key="k1")

        reloaded = create_log(FileEventStore(str(tmp_path)))
        assert reloaded.replay("tenant_a", "scn_1") == log.replay("tenant_a", "scn_1")
        assert reloaded.find_by_key("tenant_a", "scn_1", "k1") is not None
        assert answer(reloaded, "b").sequence == 3

    def test_tampered_event_detected_on_reload(self, tmp_path):
        store = FileEventStore(str(tmp_path))
        log = create_log(store)
        start(log)
        answer(log, "refinance")

        with open(store.path, encoding="utf-8") as f:
            lines = f.read().splitlines()
        record = json.loads(lines[1])
        record["payload"]["value"]["value"] = "purchase"
        lines[1] = json.dumps(record)
        with open(store.path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

        with pytest.raises(TimelineCorruption) as excinfo:
            create_log(FileEventStore(str(tmp_path)))
        assert excinfo.value.code is ErrorCode.TIMELINE_CORRUPTION

    def test_unreadable_line_detected(self, tmp_path):
        store = FileEventStore(str(tmp_path))
        start(create_log(store))
        with open(store.path, "a", encoding="utf-8") as f:
            f.write("not json\n")
        with pytest.raises(TimelineCorruption):
            create_log(FileEventStore(str(tmp_path)))

    def test_store_factory(self, tmp_path):
        assert isinstance(create_event_store(), InMemoryEventStore)
        store = create_event_store(EventStoreConfig(backend_type="file", storage_dir=str(tmp_path)))
        assert isinstance(store, FileEventStore)
        with pytest.raises(ValueError):
            create_event_store(EventStoreConfig(backend_type="file"))
        with pytest.raises(ValueError):
            create_event_store(EventStoreConfig(backend_type="postgres"))


class TestClock:

    def test_manual_clock_only_moves_when_advanced(self):
        clock = LogicalClock.manual(T1)
        assert clock.now() == T1
        assert clock.advance(HOUR) == T1 + HOUR
        assert not clock.is_live()

    def test_live_clock_reads_utc(self):
        clock = LogicalClock.live()
        assert clock.is_live()
        assert clock.now().tzinfo is not None

    def test_live_clock_cannot_be_advanced(self):
        with pytest.raises(ValueError):
            LogicalClock.live().advance(HOUR)
