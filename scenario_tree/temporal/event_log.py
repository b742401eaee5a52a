"""
Scenario Event Log
==================

Append-only, per-scenario event sequences with idempotency and a hash
chain.

INVARIANTS:
- No updates or deletes: append only
- Per scenario, sequence numbers are 1, 2, 3, ... with no gaps
- An idempotency key is assigned at most one sequence per scenario
- Every entry links to its predecessor's hash
- A stream starts with exactly one SCENARIO_STARTED

This is the SOURCE OF TRUTH for all scenario state.
State is DERIVED from this log, never stored separately.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple
import json
import logging
import threading

from ..contracts.base import Error, ErrorCode, RequestContext, canonical_json, new_id, utc
from ..contracts.events import EventType, ScenarioEvent, missing_fields
from ..errors import (
    ConcurrentModificationError, ImmutableLogViolation, InvalidStateTransition,
    TimelineCorruption, ValidationError,
)
from ..storage import EventStore, InMemoryEventStore
from .clock import LogicalClock


logger = logging.getLogger(__name__)

StreamKey = Tuple[str, str]  # (tenant_id, scenario_id)


class ScenarioEventLog:
    """
    GUARANTEES:
    ===========
    1. Appends for one (tenant, scenario) are serialized by that stream's
       lock; different scenarios append in parallel
    2. An event is durable in the EventStore before it becomes visible
    3. Reads return immutable snapshots (tuples), never partial appends
    4. Reloading from storage verifies sequence and hash chain
    """

    def __init__(self, store: Optional[EventStore] = None, clock: Optional[LogicalClock] = None):
        self._store = store or InMemoryEventStore()
        self._clock = clock or LogicalClock.live()
        self._streams: Dict[StreamKey, List[ScenarioEvent]] = {}
        self._idempotency: Dict[Tuple[str, str, str], ScenarioEvent] = {}
        self._all: List[ScenarioEvent] = []
        self._locks: Dict[StreamKey, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._hydrate()

    # =========================================================================
    # WRITE
    # =========================================================================

    def lock_for(self, tenant_id: str, scenario_id: str) -> threading.RLock:
        """The lock serializing one scenario's appends (re-entrant)."""
        key = (tenant_id, scenario_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def append(
        self,
        ctx: RequestContext,
        scenario_id: str,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        causation_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        valid_at: Optional[datetime] = None,
    ) -> ScenarioEvent:
        """
        Append one event. This is the ONLY write operation.

        A repeated idempotency key returns the originally appended event
        without assigning a new sequence.
        """
        payload = dict(payload or {})
        missing = missing_fields(event_type, payload)
        if missing:
            raise ValidationError(
                f"{event_type.value} payload is missing {', '.join(missing)}",
                errors=[f"missing field: {name}" for name in missing],
                context={"scenario_id": scenario_id},
            )
        # Store exactly what the file store would round-trip
        plain = json.loads(canonical_json(payload))
        key = (ctx.tenant_id, scenario_id)

        with self.lock_for(*key):
            if idempotency_key is not None:
                original = self._idempotency.get((ctx.tenant_id, scenario_id, idempotency_key))
                if original is not None:
                    logger.debug(
                        "Duplicate idempotency key %s for %s: returning sequence %d",
                        idempotency_key, scenario_id, original.sequence,
                    )
                    return original

            stream = self._streams.get(key, [])
            current = len(stream)
            if expected_version is not None and expected_version != current:
                raise ConcurrentModificationError(
                    f"Scenario {scenario_id} is at version {current}, expected {expected_version}",
                    expected_version=expected_version,
                    current_version=current,
                )
            if current == 0 and event_type is not EventType.SCENARIO_STARTED:
                raise InvalidStateTransition(
                    f"Scenario {scenario_id} has not been started",
                    {"scenario_id": scenario_id},
                )
            if current > 0 and event_type is EventType.SCENARIO_STARTED:
                raise InvalidStateTransition(
                    f"Scenario {scenario_id} is already started",
                    {"scenario_id": scenario_id},
                )

            event = ScenarioEvent.create(
                event_id=new_id("evt"),
                scenario_id=scenario_id,
                tenant_id=ctx.tenant_id,
                sequence=current + 1,
                event_type=event_type,
                payload=plain,
                recorded_at=self._clock.now(),
                valid_at=utc(valid_at) if valid_at is not None else None,
                actor_id=ctx.actor_id,
                actor_type=ctx.actor_type,
                idempotency_key=idempotency_key,
                causation_id=causation_id,
                correlation_id=correlation_id or ctx.correlation_id,
                previous_hash=stream[-1].entry_hash if stream else "",
            )
            self._store.append(event)
            self._index(event)

        logger.debug("Appended %s #%d to %s", event_type.value, event.sequence, scenario_id)
        return event

    def update(self, *args, **kwargs):
        raise ImmutableLogViolation("Scenario events cannot be updated")

    def delete(self, *args, **kwargs):
        raise ImmutableLogViolation("Scenario events cannot be deleted")

    # =========================================================================
    # READ
    # =========================================================================

    def replay(
        self,
        tenant_id: str,
        scenario_id: str,
        up_to_version: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> Tuple[ScenarioEvent, ...]:
        """
        Events of one scenario in sequence order.

        up_to_version: stop at this sequence (inclusive)
        as_of: only events recorded at or before this system time
        """
        events = tuple(self._streams.get((tenant_id, scenario_id), ()))
        if up_to_version is not None:
            events = tuple(e for e in events if e.sequence <= up_to_version)
        if as_of is not None:
            cutoff = utc(as_of)
            events = tuple(e for e in events if e.recorded_at <= cutoff)
        return events

    def find_by_key(self, tenant_id: str, scenario_id: str, idempotency_key: str) -> Optional[ScenarioEvent]:
        """The event already appended under this idempotency key, if any."""
        return self._idempotency.get((tenant_id, scenario_id, idempotency_key))

    def exists(self, tenant_id: str, scenario_id: str) -> bool:
        return (tenant_id, scenario_id) in self._streams

    def version(self, tenant_id: str, scenario_id: str) -> int:
        return len(self._streams.get((tenant_id, scenario_id), ()))

    def head_hash(self, tenant_id: str, scenario_id: str) -> str:
        stream = self._streams.get((tenant_id, scenario_id))
        return stream[-1].entry_hash if stream else ""

    def scenario_ids(self, tenant_id: Optional[str] = None) -> List[str]:
        return sorted(sid for (tid, sid) in self._streams if tenant_id is None or tid == tenant_id)

    def all_events(self, tenant_id: Optional[str] = None) -> Iterator[ScenarioEvent]:
        """Every event in global append order (audit export)."""
        for event in tuple(self._all):
            if tenant_id is None or event.tenant_id == tenant_id:
                yield event

    def verify_integrity(self, tenant_id: str, scenario_id: str) -> Tuple[bool, Optional[Error]]:
        """
        Verify sequence contiguity and the hash chain of one scenario.

        Returns (is_valid, error).
        """
        expected_previous = ""
        for index, event in enumerate(self.replay(tenant_id, scenario_id), start=1):
            problem = None
            if event.sequence != index:
                problem = f"Sequence gap: expected {index}, found {event.sequence}"
            elif event.previous_hash != expected_previous:
                problem = f"Hash chain broken at sequence {event.sequence}"
            elif not event.verify_hash():
                problem = f"Entry hash mismatch at sequence {event.sequence}"
            if problem:
                return (False, Error(
                    code=ErrorCode.TIMELINE_CORRUPTION,
                    message=problem,
                    timestamp=event.recorded_at,
                    context=(("scenario_id", scenario_id), ("sequence", str(event.sequence))),
                ))
            expected_previous = event.entry_hash
        return (True, None)

    # =========================================================================
    # HYDRATION
    # =========================================================================

    def _hydrate(self) -> None:
        loaded = 0
        for event in self._store.load():
            self.load_verified_event(event)
            loaded += 1
        if loaded:
            logger.info("Loaded %d event(s) across %d scenario(s)", loaded, len(self._streams))

    def load_verified_event(self, event: ScenarioEvent) -> None:
        """
        Load a stored event, verifying:
        1. Sequence is the next one for its scenario
        2. previous_hash matches the scenario's head
        3. entry_hash matches the event content
        """
        key = (event.tenant_id, event.scenario_id)
        stream = self._streams.get(key, [])
        expected = len(stream) + 1
        if event.sequence != expected:
            raise TimelineCorruption(
                f"Invalid sequence for {event.scenario_id}: expected {expected}, got {event.sequence}",
                {"scenario_id": event.scenario_id},
            )
        head = stream[-1].entry_hash if stream else ""
        if event.previous_hash != head:
            raise TimelineCorruption(
                f"Broken hash chain for {event.scenario_id} at {event.sequence}",
                {"scenario_id": event.scenario_id},
            )
        if not event.verify_hash():
            raise TimelineCorruption(
                f"Corrupt event for {event.scenario_id} at {event.sequence}: hash mismatch",
                {"scenario_id": event.scenario_id},
            )
        self._index(event)

    def _index(self, event: ScenarioEvent) -> None:
        key = (event.tenant_id, event.scenario_id)
        self._streams.setdefault(key, []).append(event)
        if event.idempotency_key is not None:
            self._idempotency[(event.tenant_id, event.scenario_id, event.idempotency_key)] = event
        self._all.append(event)
