"""
Event Storage Layer

RESPONSIBILITY: Durable, append-only persistence of scenario events
ALLOWED INPUTS: ScenarioEvent (already sequenced and hash-chained)
OUTPUTS: the same events, in append order

WHAT THIS LAYER MUST NOT DO:
============================
- Assign sequences or hashes (the event log does that)
- Interpret payloads
- Modify or delete stored events
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterator, List, Optional
import json
import logging
import os
import threading

from ..contracts.base import canonical_json
from ..contracts.events import ScenarioEvent
from ..errors import TimelineCorruption


logger = logging.getLogger(__name__)


# =============================================================================
# STORAGE INTERFACE
# =============================================================================

class EventStore:
    """
    Abstract event store.

    Implementations differ in durability only; all of them are append-only
    and return events in the order they were appended.
    """

    def append(self, event: ScenarioEvent) -> None:
        raise NotImplementedError

    def load(self) -> Iterator[ScenarioEvent]:
        raise NotImplementedError

    def count(self) -> int:
        raise NotImplementedError


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryEventStore(EventStore):
    """Reference implementation; suitable for tests and previews."""

    def __init__(self):
        self._events: List[ScenarioEvent] = []

    def append(self, event: ScenarioEvent) -> None:
        self._events.append(event)

    def load(self) -> Iterator[ScenarioEvent]:
        return iter(list(self._events))

    def count(self) -> int:
        return len(self._events)


# =============================================================================
# FILE STORE
# =============================================================================

class FileEventStore(EventStore):
    """
    JSON Lines file, one event per line, opened in append mode only.

    Lines are written with a flush + fsync so an acknowledged append
    survives a process crash.
    """

    def __init__(self, storage_dir: str):
        self._storage_dir = storage_dir
        self._events_file = os.path.join(storage_dir, "events.jsonl")
        self._write_lock = threading.Lock()
        self._count = 0
        os.makedirs(storage_dir, exist_ok=True)
        if os.path.exists(self._events_file):
            with open(self._events_file, 'r', encoding='utf-8') as f:
                self._count = sum(1 for line in f if line.strip())

    @property
    def path(self) -> str:
        return self._events_file

    def append(self, event: ScenarioEvent) -> None:
        line = canonical_json(event.to_record())
        with self._write_lock:
            with open(self._events_file, 'a', encoding='utf-8') as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._count += 1

    def load(self) -> Iterator[ScenarioEvent]:
        if not os.path.exists(self._events_file):
            return
        with open(self._events_file, 'r', encoding='utf-8') as f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                    yield ScenarioEvent.from_record(record)
                except (ValueError, KeyError) as exc:
                    raise TimelineCorruption(
                        f"Unreadable event at {self._events_file}:{line_number}: {exc}",
                        {"line": str(line_number)},
                    ) from exc

    def count(self) -> int:
        return self._count


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class EventStoreConfig:
    """Configuration for event storage."""
    backend_type: str = "memory"  # "memory" or "file"
    storage_dir: Optional[str] = None


def create_event_store(config: Optional[EventStoreConfig] = None) -> EventStore:
    config = config or EventStoreConfig()
    if config.backend_type == "file":
        if not config.storage_dir:
            raise ValueError("File event storage requires storage_dir")
        logger.info("Using file event store at %s", config.storage_dir)
        return FileEventStore(config.storage_dir)
    if config.backend_type != "memory":
        raise ValueError(f"Unknown event store backend {config.backend_type!r}")
    return InMemoryEventStore()


__all__ = [
    'EventStore',
    'EventStoreConfig',
    'FileEventStore',
    'InMemoryEventStore',
    'create_event_store',
]
