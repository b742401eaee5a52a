"""
Base Contracts and Shared Types

These are the foundational types used across all layers.
All types here are IMMUTABLE and represent pure data.

BOUNDARY ENFORCEMENT:
=====================
- This module is READ-ONLY from all layers
- Layers may import types but MUST NOT modify this module
- All types are frozen dataclasses for immutability guarantee
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Optional, Tuple
import hashlib
import json
import uuid


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Stable error codes surfaced to callers.
    Every rejected operation maps to exactly one code.
    """
    # Input errors
    VALIDATION_FAILED = auto()
    NOT_FOUND = auto()
    DUPLICATE = auto()

    # Catalog errors
    PROTECTED_QUESTION = auto()
    QUESTION_IN_USE = auto()
    INVALID_LIFECYCLE_TRANSITION = auto()

    # Tree errors
    TREE_PUBLISH_INVALID = auto()
    TREE_IMMUTABLE = auto()
    TREE_STRUCTURE_INVALID = auto()

    # Event log errors
    IMMUTABLE_LOG_VIOLATION = auto()
    CONCURRENT_MODIFICATION = auto()
    TIMELINE_CORRUPTION = auto()

    # Scenario errors
    INVALID_STATE_TRANSITION = auto()


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data, not exceptions - they can be stored and queried.
    """
    code: ErrorCode
    message: str
    timestamp: datetime
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def with_context(self, key: str, value: str) -> Error:
        """Return new Error with additional context (immutable)."""
        return Error(
            code=self.code,
            message=self.message,
            timestamp=self.timestamp,
            context=self.context + ((key, value),)
        )


# =============================================================================
# TEMPORAL TYPES (Immutable, explicit semantics)
# =============================================================================

# Open upper bound of a validity window ("infinity")
END_OF_TIME = datetime.max.replace(tzinfo=timezone.utc)


def utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Timestamp:
    """
    Immutable timestamp with explicit semantics.
    All timestamps are UTC, never local time.
    """
    value: datetime

    def __post_init__(self):
        object.__setattr__(self, 'value', utc(self.value))

    @staticmethod
    def now() -> Timestamp:
        return Timestamp(value=utc_now())

    @staticmethod
    def from_iso(iso_string: str) -> Timestamp:
        return Timestamp(value=datetime.fromisoformat(iso_string.replace('Z', '+00:00')))

    def to_iso(self) -> str:
        return self.value.isoformat()


@dataclass(frozen=True)
class ValidityWindow:
    """
    Half-open validity interval [valid_from, valid_to).

    Used for question versions and for answer history, where the
    window of a superseded value is closed at the superseding time.
    """
    valid_from: datetime
    valid_to: datetime = END_OF_TIME

    def __post_init__(self):
        object.__setattr__(self, 'valid_from', utc(self.valid_from))
        object.__setattr__(self, 'valid_to', utc(self.valid_to))
        if self.valid_from > self.valid_to:
            raise ValueError("valid_from must not be after valid_to")

    def contains(self, moment: datetime) -> bool:
        moment = utc(moment)
        return self.valid_from <= moment < self.valid_to

    @property
    def is_open(self) -> bool:
        return self.valid_to == END_OF_TIME

    def closed_at(self, moment: datetime) -> ValidityWindow:
        # A window never closes before it opened
        end = max(utc(moment), self.valid_from)
        return ValidityWindow(valid_from=self.valid_from, valid_to=end)


# =============================================================================
# REQUEST CONTEXT (explicit, never ambient)
# =============================================================================

class ActorType(Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"
    INTEGRATION = "INTEGRATION"


@dataclass(frozen=True)
class RequestContext:
    """
    Caller identity threaded through every operation.

    There is no process-wide "current tenant"; each call carries its own.
    """
    tenant_id: str
    actor_id: str
    actor_type: ActorType = ActorType.USER
    correlation_id: Optional[str] = None

    def __post_init__(self):
        if not self.tenant_id:
            raise ValueError("tenant_id must be a non-empty string")
        if not self.actor_id:
            raise ValueError("actor_id must be a non-empty string")

    @staticmethod
    def system(tenant_id: str) -> RequestContext:
        return RequestContext(tenant_id=tenant_id, actor_id="system", actor_type=ActorType.SYSTEM)


# =============================================================================
# IDENTITY & HASHING
# =============================================================================

def new_id(prefix: str) -> str:
    """Random identifier for entities whose identity is assigned, not derived."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _canonical_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        return utc(value).isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Unhashable content type: {type(value).__name__}")


def canonical_json(content: Any) -> str:
    """Deterministic JSON encoding used for content addressing."""
    return json.dumps(content, sort_keys=True, separators=(",", ":"), default=_canonical_default)


def content_hash(content: Any) -> str:
    """SHA-256 of the canonical encoding: same content, same hash."""
    return hashlib.sha256(canonical_json(content).encode('utf-8')).hexdigest()


