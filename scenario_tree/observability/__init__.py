"""
Observability & Audit Layer

RESPONSIBILITY: Logging configuration, audit export of the event log
ALLOWED INPUTS: ScenarioEventLog (read-only)
OUTPUTS: AuditRecord lists, audit reports, configured log handlers

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events beyond selection by tenant/scenario/time
- Append to or otherwise modify the event log

BOUNDARY ENFORCEMENT:
=====================
- Reads snapshots of the log, never the live lists
- Every exported record carries actor, both timestamps and correlation id
"""

from __future__ import annotations
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import json
import logging

from ..contracts.base import utc
from ..contracts.events import ScenarioEvent
from ..temporal.event_log import ScenarioEventLog


# =============================================================================
# LOGGING
# =============================================================================

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def configure_logging(level: Union[str, int] = "INFO", json_output: bool = False) -> None:
    """Configure the root logger once for the whole process."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError("Unknown log level")
    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.basicConfig(level=level, handlers=[handler], force=True)


# =============================================================================
# AUDIT EXPORT
# =============================================================================

@dataclass(frozen=True)
class AuditRecord:
    event_id: str
    tenant_id: str
    scenario_id: str
    sequence: int
    event_type: str
    actor_id: str
    actor_type: str
    recorded_at: datetime
    valid_at: datetime
    correlation_id: Optional[str]
    causation_id: Optional[str]
    idempotency_key: Optional[str]
    entry_hash: str

    @staticmethod
    def of(event: ScenarioEvent) -> AuditRecord:
        return AuditRecord(
            event_id=event.event_id,
            tenant_id=event.tenant_id,
            scenario_id=event.scenario_id,
            sequence=event.sequence,
            event_type=event.event_type.value,
            actor_id=event.actor_id,
            actor_type=event.actor_type.value,
            recorded_at=event.recorded_at,
            valid_at=event.valid_at,
            correlation_id=event.correlation_id,
            causation_id=event.causation_id,
            idempotency_key=event.idempotency_key,
            entry_hash=event.entry_hash,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "tenant_id": self.tenant_id,
            "scenario_id": self.scenario_id,
            "sequence": self.sequence,
            "event_type": self.event_type,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
            "recorded_at": self.recorded_at.isoformat(),
            "valid_at": self.valid_at.isoformat(),
            "correlation_id": self.correlation_id,
            "causation_id": self.causation_id,
            "idempotency_key": self.idempotency_key,
            "entry_hash": self.entry_hash,
        }


class AuditExporter:
    """Read-only view of the event log for auditors."""

    def __init__(self, log: ScenarioEventLog):
        self._log = log

    def export(
        self,
        tenant_id: str,
        scenario_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AuditRecord]:
        """Events of one tenant in append order, optionally narrowed."""
        start = utc(since) if since is not None else None
        end = utc(until) if until is not None else None
        records = []
        for event in self._log.all_events(tenant_id):
            if scenario_id is not None and event.scenario_id != scenario_id:
                continue
            if start is not None and event.recorded_at < start:
                continue
            if end is not None and event.recorded_at > end:
                continue
            records.append(AuditRecord.of(event))
        return records

    def report(self, tenant_id: str) -> Dict[str, Any]:
        """Counts by event type and actor, plus the covered time range."""
        records = self.export(tenant_id)
        return {
            'total_events': len(records),
            'scenarios': len({r.scenario_id for r in records}),
            'by_event_type': dict(sorted(Counter(r.event_type for r in records).items())),
            'by_actor': dict(sorted(Counter(r.actor_id for r in records).items())),
            'time_range': {
                'start': min(r.recorded_at for r in records).isoformat() if records else None,
                'end': max(r.recorded_at for r in records).isoformat() if records else None,
            },
        }


__all__ = [
    'AuditExporter',
    'AuditRecord',
    'JSONFormatter',
    'configure_logging',
]
