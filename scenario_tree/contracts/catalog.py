"""
Question Catalog Contracts
==========================

Questions are the permanent identities that answers attach to.
A question_id never changes meaning; a new version of the same code is
a new question_id whose validity window starts where the old one ends.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .base import ValidityWindow
from .values import DataType


class QuestionScope(Enum):
    CORE = "CORE"
    STANDARD = "STANDARD"
    LENDER = "LENDER"
    CUSTOM = "CUSTOM"
    TEMPORARY = "TEMPORARY"

    @property
    def is_system(self) -> bool:
        """System questions are shared by every tenant and are protected."""
        return self in (QuestionScope.CORE, QuestionScope.STANDARD)


class OwnerType(Enum):
    TENANT = "TENANT"
    LENDER = "LENDER"
    USER = "USER"


class QuestionStatus(Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    DEPRECATED = "DEPRECATED"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"


# Lifecycle only moves forward through this order
LIFECYCLE_RANK: Dict[QuestionStatus, int] = {
    QuestionStatus.DRAFT: 0,
    QuestionStatus.ACTIVE: 1,
    QuestionStatus.DEPRECATED: 2,
    QuestionStatus.ARCHIVED: 3,
    QuestionStatus.DELETED: 4,
}

# Statuses in which a question may still be referenced by new tree nodes
# and resolved by code
SELECTABLE_STATUSES = frozenset({QuestionStatus.ACTIVE, QuestionStatus.DEPRECATED})


@dataclass(frozen=True)
class Question:
    question_id: str
    code: str
    version: int
    scope: QuestionScope
    data_type: DataType
    status: QuestionStatus
    validity: ValidityWindow
    owner_id: Optional[str] = None
    owner_type: Optional[OwnerType] = None
    validation_schema: Optional[Dict[str, Any]] = field(default=None, hash=False, compare=False)
    label: Optional[str] = None
    replacement_id: Optional[str] = None
    status_reason: Optional[str] = None
    created_by: Optional[str] = None

    def is_selectable_at(self, moment: datetime) -> bool:
        return self.status in SELECTABLE_STATUSES and self.validity.contains(moment)

    def with_status(self, status: QuestionStatus, reason: Optional[str] = None) -> Question:
        return replace(self, status=status, status_reason=reason)


@dataclass(frozen=True)
class Lender:
    lender_id: str
    tenant_id: str
    name: str
    is_active: bool = True
