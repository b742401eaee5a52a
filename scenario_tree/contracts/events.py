"""
Scenario Event Contracts
========================

The immutable facts that make up a scenario's history.

Every state change of a scenario is one ScenarioEvent. Events are
appended to a per-scenario sequence and chained by hash:

    entry_hash = sha256(canonical(event content + previous_hash))

INVARIANTS:
- sequence starts at 1 and increases by exactly 1 per scenario
- (scenario, idempotency_key) identifies at most one event
- payload is plain JSON (answer values in their tagged record form)
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .base import ActorType, content_hash, utc


class EventType(Enum):
    SCENARIO_STARTED = "SCENARIO_STARTED"
    NODE_ENTERED = "NODE_ENTERED"
    NODE_EXITED = "NODE_EXITED"
    ANSWER_PROVIDED = "ANSWER_PROVIDED"
    ANSWER_CLEARED = "ANSWER_CLEARED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_PASSED = "VALIDATION_PASSED"
    STAGE_COMPLETED = "STAGE_COMPLETED"
    SCENARIO_SUBMITTED = "SCENARIO_SUBMITTED"
    SCENARIO_COMPLETED = "SCENARIO_COMPLETED"
    SCENARIO_CANCELLED = "SCENARIO_CANCELLED"
    EXTERNAL_DATA_RECEIVED = "EXTERNAL_DATA_RECEIVED"
    FAMILY_LINKED = "FAMILY_LINKED"


# Payload fields every event of a type must carry
REQUIRED_FIELDS: Dict[EventType, Tuple[str, ...]] = {
    EventType.SCENARIO_STARTED: ("tree_id",),
    EventType.NODE_ENTERED: ("node_id",),
    EventType.NODE_EXITED: ("node_id", "direction"),
    EventType.ANSWER_PROVIDED: ("node_id", "question_id", "value"),
    EventType.ANSWER_CLEARED: ("node_id", "question_id"),
    EventType.VALIDATION_FAILED: ("node_id", "errors"),
    EventType.VALIDATION_PASSED: ("node_id",),
    EventType.STAGE_COMPLETED: ("stage",),
    EventType.SCENARIO_SUBMITTED: ("final_answers",),
    EventType.SCENARIO_COMPLETED: (),
    EventType.SCENARIO_CANCELLED: ("reason",),
    EventType.EXTERNAL_DATA_RECEIVED: ("source", "data"),
    EventType.FAMILY_LINKED: ("family_id",),
}


def missing_fields(event_type: EventType, payload: Dict[str, Any]) -> List[str]:
    return [name for name in REQUIRED_FIELDS[event_type] if payload.get(name) is None]


class AnswerSource(Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"
    IMPORT = "IMPORT"
    COMPUTED = "COMPUTED"


class ExitDirection(Enum):
    FORWARD = "forward"
    BACK = "back"
    SKIP = "skip"


@dataclass(frozen=True)
class ScenarioEvent:
    """
    One appended fact.

    recorded_at is system time (when the log learned it); valid_at is
    real-world time (when it became true). valid_at defaults to recorded_at.
    """
    event_id: str
    scenario_id: str
    tenant_id: str
    sequence: int
    event_type: EventType
    payload: Dict[str, Any] = field(hash=False)
    recorded_at: datetime
    valid_at: datetime
    actor_id: str
    actor_type: ActorType = ActorType.USER
    idempotency_key: Optional[str] = None
    causation_id: Optional[str] = None
    correlation_id: Optional[str] = None
    previous_hash: str = ""
    entry_hash: str = ""

    def hash_content(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "scenario_id": self.scenario_id,
            "tenant_id": self.tenant_id,
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "payload": self.payload,
            "recorded_at": utc(self.recorded_at).isoformat(),
            "valid_at": utc(self.valid_at).isoformat(),
            "actor_id": self.actor_id,
            "actor_type": self.actor_type.value,
            "idempotency_key": self.idempotency_key,
            "causation_id": self.causation_id,
            "correlation_id": self.correlation_id,
            "previous_hash": self.previous_hash,
        }

    def compute_hash(self) -> str:
        return content_hash(self.hash_content())

    def verify_hash(self) -> bool:
        return self.entry_hash == self.compute_hash()

    @staticmethod
    def create(
        event_id: str,
        scenario_id: str,
        tenant_id: str,
        sequence: int,
        event_type: EventType,
        payload: Dict[str, Any],
        recorded_at: datetime,
        actor_id: str,
        actor_type: ActorType = ActorType.USER,
        valid_at: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        causation_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        previous_hash: str = "",
    ) -> ScenarioEvent:
        unsealed = ScenarioEvent(
            event_id=event_id,
            scenario_id=scenario_id,
            tenant_id=tenant_id,
            sequence=sequence,
            event_type=event_type,
            payload=payload,
            recorded_at=utc(recorded_at),
            valid_at=utc(valid_at if valid_at is not None else recorded_at),
            actor_id=actor_id,
            actor_type=actor_type,
            idempotency_key=idempotency_key,
            causation_id=causation_id,
            correlation_id=correlation_id,
            previous_hash=previous_hash,
        )
        return replace(unsealed, entry_hash=unsealed.compute_hash())

    def to_record(self) -> Dict[str, Any]:
        """Plain JSON form used by file storage and audit export."""
        record = self.hash_content()
        record["entry_hash"] = self.entry_hash
        return record

    @staticmethod
    def from_record(record: Dict[str, Any]) -> ScenarioEvent:
        return ScenarioEvent(
            event_id=record["event_id"],
            scenario_id=record["scenario_id"],
            tenant_id=record["tenant_id"],
            sequence=int(record["sequence"]),
            event_type=EventType(record["event_type"]),
            payload=record["payload"],
            recorded_at=utc(datetime.fromisoformat(record["recorded_at"])),
            valid_at=utc(datetime.fromisoformat(record["valid_at"])),
            actor_id=record["actor_id"],
            actor_type=ActorType(record["actor_type"]),
            idempotency_key=record.get("idempotency_key"),
            causation_id=record.get("causation_id"),
            correlation_id=record.get("correlation_id"),
            previous_hash=record.get("previous_hash", ""),
            entry_hash=record.get("entry_hash", ""),
        )
