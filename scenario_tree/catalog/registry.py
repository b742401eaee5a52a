"""
Question Catalog
================

Authoritative registry of questions and lenders.

GUARANTEES:
===========
1. question_id is permanent: renames and status changes keep it
2. Lifecycle is monotonic: DRAFT -> ACTIVE -> DEPRECATED -> ARCHIVED,
   with DELETED as a soft terminal state for non-system scopes
3. CORE/STANDARD questions cannot be renamed or deleted
4. A question answered in an open scenario cannot be archived or deleted
5. Versions of one code never overlap in validity
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
import logging
import threading

from ..contracts.base import END_OF_TIME, RequestContext, ValidityWindow, new_id, utc
from ..contracts.catalog import (
    LIFECYCLE_RANK, Lender, OwnerType, Question, QuestionScope, QuestionStatus,
)
from ..contracts.values import DataType
from ..errors import (
    DuplicateError, DuplicateQuestionError, InvalidLifecycleTransition, NotFoundError,
    ProtectedQuestionError, QuestionInUse, ValidationError,
)
from ..temporal.clock import LogicalClock
from .validation import check_schema


logger = logging.getLogger(__name__)

# question_id -> number of open scenarios holding an answer to it
UsageProbe = Callable[[str], int]


def _no_usage(question_id: str) -> int:
    return 0


class QuestionCatalog:
    """
    In-memory question registry.

    Every mutation replaces the stored Question record (records are
    immutable); history of a code is kept as separate versions.
    """

    def __init__(self, clock: Optional[LogicalClock] = None, usage_probe: Optional[UsageProbe] = None):
        self._clock = clock or LogicalClock.live()
        self._usage_probe: UsageProbe = usage_probe or _no_usage
        self._questions: Dict[str, Question] = {}
        self._lenders: Dict[str, Lender] = {}
        self._lock = threading.RLock()

    def set_usage_probe(self, probe: UsageProbe) -> None:
        self._usage_probe = probe

    # =========================================================================
    # DEFINITION
    # =========================================================================

    def define(
        self,
        ctx: RequestContext,
        code: str,
        data_type: DataType,
        scope: QuestionScope,
        owner_id: Optional[str] = None,
        owner_type: Optional[OwnerType] = None,
        validation_schema: Optional[dict] = None,
        label: Optional[str] = None,
        valid_from: Optional[datetime] = None,
        valid_to: Optional[datetime] = None,
        status: QuestionStatus = QuestionStatus.ACTIVE,
    ) -> Question:
        if not code or not code.strip():
            raise ValidationError("Question code must be non-empty")
        if status not in (QuestionStatus.DRAFT, QuestionStatus.ACTIVE):
            raise InvalidLifecycleTransition(
                f"A question can only be defined as DRAFT or ACTIVE, not {status.value}"
            )
        self._check_ownership(ctx, scope, owner_id, owner_type)
        if validation_schema:
            check_schema(validation_schema)

        with self._lock:
            if self._versions_of(code, owner_id):
                raise DuplicateQuestionError(
                    f"Question {code!r} already exists for owner {owner_id!r}",
                    {"code": code, "owner_id": str(owner_id)},
                )
            question = Question(
                question_id=new_id("q"),
                code=code,
                version=1,
                scope=scope,
                data_type=data_type,
                status=status,
                validity=ValidityWindow(
                    valid_from=valid_from or self._clock.now(),
                    valid_to=valid_to or END_OF_TIME,
                ),
                owner_id=owner_id,
                owner_type=owner_type,
                validation_schema=validation_schema,
                label=label,
                created_by=ctx.actor_id,
            )
            self._questions[question.question_id] = question

        logger.info("Defined question %s (%s, %s) as %s", code, scope.value, data_type.value, question.question_id)
        return question

    def define_version(
        self,
        ctx: RequestContext,
        question_id: str,
        valid_from: Optional[datetime] = None,
        data_type: Optional[DataType] = None,
        validation_schema: Optional[dict] = None,
        label: Optional[str] = None,
    ) -> Question:
        """
        Start a new version of a question's code.

        The previous version's validity closes where the new one begins.
        Answers keep pointing at the version they were given for.
        """
        if validation_schema:
            check_schema(validation_schema)
        with self._lock:
            previous = self.get(question_id)
            latest = self._versions_of(previous.code, previous.owner_id)[-1]
            if latest.question_id != previous.question_id:
                raise InvalidLifecycleTransition(
                    f"Question {question_id} is not the latest version of {previous.code}",
                    {"latest": latest.question_id},
                )
            if previous.status in (QuestionStatus.ARCHIVED, QuestionStatus.DELETED):
                raise InvalidLifecycleTransition(
                    f"Cannot version a {previous.status.value} question"
                )
            start = utc(valid_from or self._clock.now())
            if start <= previous.validity.valid_from:
                raise ValidationError("A new version must start after the previous version")

            successor = Question(
                question_id=new_id("q"),
                code=previous.code,
                version=previous.version + 1,
                scope=previous.scope,
                data_type=data_type or previous.data_type,
                status=QuestionStatus.ACTIVE,
                validity=ValidityWindow(valid_from=start, valid_to=previous.validity.valid_to),
                owner_id=previous.owner_id,
                owner_type=previous.owner_type,
                validation_schema=validation_schema if validation_schema is not None else previous.validation_schema,
                label=label or previous.label,
                created_by=ctx.actor_id,
            )
            self._questions[previous.question_id] = replace(
                previous,
                validity=previous.validity.closed_at(start),
                replacement_id=successor.question_id,
            )
            self._questions[successor.question_id] = successor

        logger.info("Question %s version %d -> %s", previous.code, successor.version, successor.question_id)
        return successor

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def activate(self, ctx: RequestContext, question_id: str) -> Question:
        return self._transition(ctx, question_id, QuestionStatus.ACTIVE)

    def deprecate(
        self,
        ctx: RequestContext,
        question_id: str,
        replacement_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Question:
        if replacement_id is not None:
            self.get(replacement_id)
        question = self._transition(ctx, question_id, QuestionStatus.DEPRECATED, reason)
        if replacement_id is not None:
            with self._lock:
                question = replace(question, replacement_id=replacement_id)
                self._questions[question_id] = question
        return question

    def archive(self, ctx: RequestContext, question_id: str, reason: Optional[str] = None) -> Question:
        return self._transition(ctx, question_id, QuestionStatus.ARCHIVED, reason)

    def delete(self, ctx: RequestContext, question_id: str, reason: str) -> Question:
        """Soft delete. System questions are protected; a reason is mandatory."""
        question = self.get(question_id)
        if question.scope.is_system:
            raise ProtectedQuestionError(
                f"{question.scope.value} question {question.code} cannot be deleted",
                {"question_id": question_id},
            )
        if not reason or not reason.strip():
            raise ValidationError("A deletion reason is required")
        return self._transition(ctx, question_id, QuestionStatus.DELETED, reason)

    def rename(self, ctx: RequestContext, question_id: str, new_code: str) -> Question:
        """Rename every version of a code. Identity (question_id) is kept."""
        if not new_code or not new_code.strip():
            raise ValidationError("Question code must be non-empty")
        with self._lock:
            question = self.get(question_id)
            if question.scope.is_system:
                raise ProtectedQuestionError(
                    f"{question.scope.value} question {question.code} cannot be renamed",
                    {"question_id": question_id},
                )
            if question.status is QuestionStatus.DELETED:
                raise InvalidLifecycleTransition("Cannot rename a deleted question")
            if new_code == question.code:
                return question
            if self._versions_of(new_code, question.owner_id):
                raise DuplicateQuestionError(
                    f"Question {new_code!r} already exists for owner {question.owner_id!r}",
                    {"code": new_code},
                )
            for version in self._versions_of(question.code, question.owner_id):
                self._questions[version.question_id] = replace(version, code=new_code)
            renamed = self._questions[question_id]

        logger.info("Renamed question %s: %s -> %s (by %s)", question_id, question.code, new_code, ctx.actor_id)
        return renamed

    def _transition(
        self,
        ctx: RequestContext,
        question_id: str,
        target: QuestionStatus,
        reason: Optional[str] = None,
    ) -> Question:
        with self._lock:
            question = self.get(question_id)
            self._check_transition(question, target)
            if target in (QuestionStatus.ARCHIVED, QuestionStatus.DELETED):
                self._check_not_in_use(question)
            updated = question.with_status(target, reason)
            self._questions[question_id] = updated

        logger.info(
            "Question %s (%s): %s -> %s by %s",
            question.code, question_id, question.status.value, target.value, ctx.actor_id,
        )
        return updated

    @staticmethod
    def _check_transition(question: Question, target: QuestionStatus) -> None:
        if LIFECYCLE_RANK[target] <= LIFECYCLE_RANK[question.status]:
            raise InvalidLifecycleTransition(
                f"Cannot move question {question.code} from {question.status.value} to {target.value}",
                {"question_id": question.question_id},
            )

    def _check_not_in_use(self, question: Question) -> None:
        in_use = self._usage_probe(question.question_id)
        if in_use > 0:
            logger.warning("Question %s is answered in %d open scenario(s)", question.code, in_use)
            raise QuestionInUse(
                f"Question {question.code} is answered in {in_use} open scenario(s)",
                {"question_id": question.question_id, "scenarios": str(in_use)},
            )

    # =========================================================================
    # LENDERS
    # =========================================================================

    def register_lender(self, ctx: RequestContext, name: str, lender_id: Optional[str] = None) -> Lender:
        lender = Lender(lender_id=lender_id or new_id("lender"), tenant_id=ctx.tenant_id, name=name)
        with self._lock:
            if lender.lender_id in self._lenders:
                raise DuplicateError(f"Lender {lender.lender_id} already registered", {"lender_id": lender.lender_id})
            self._lenders[lender.lender_id] = lender
        return lender

    def get_lender(self, ctx: RequestContext, lender_id: str) -> Lender:
        lender = self._lenders.get(lender_id)
        if lender is None or lender.tenant_id != ctx.tenant_id:
            raise NotFoundError(f"Lender {lender_id} not found", {"lender_id": lender_id})
        return lender

    def archive_lender(self, ctx: RequestContext, lender_id: str) -> Tuple[Question, ...]:
        """
        Deactivate a lender and archive its live LENDER-scoped questions.

        All or nothing: if any of those questions is in use, nothing changes.
        """
        with self._lock:
            lender = self.get_lender(ctx, lender_id)
            owned = [
                q for q in self._questions.values()
                if q.scope is QuestionScope.LENDER
                and q.owner_id == lender_id
                and q.status in (QuestionStatus.ACTIVE, QuestionStatus.DEPRECATED)
            ]
            for question in owned:
                self._check_not_in_use(question)

            archived = []
            for question in owned:
                updated = question.with_status(QuestionStatus.ARCHIVED, f"lender {lender_id} archived")
                self._questions[question.question_id] = updated
                archived.append(updated)
            self._lenders[lender_id] = replace(lender, is_active=False)

        logger.info("Archived lender %s and %d question(s)", lender_id, len(archived))
        return tuple(archived)

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def get(self, question_id: str) -> Question:
        question = self._questions.get(question_id)
        if question is None:
            raise NotFoundError(f"Question {question_id} not found", {"question_id": question_id})
        return question

    def find(self, code: str, owner_id: Optional[str] = None, at: Optional[datetime] = None) -> Optional[Question]:
        """
        Resolve a code to the question version valid at `at`.

        The owner's own question wins; otherwise the system question.
        Archived and deleted questions are never resolved.
        """
        moment = utc(at) if at is not None else self._clock.now()
        candidates = [q for q in self._questions.values() if q.code == code and q.is_selectable_at(moment)]
        if owner_id is not None:
            owned = [q for q in candidates if q.owner_id == owner_id]
            if owned:
                return max(owned, key=lambda q: q.version)
        system = [q for q in candidates if q.scope.is_system]
        if system:
            return max(system, key=lambda q: q.version)
        return None

    def list(
        self,
        owner_id: Optional[str] = None,
        scope: Optional[QuestionScope] = None,
        status: Optional[QuestionStatus] = None,
    ) -> List[Question]:
        questions = [
            q for q in self._questions.values()
            if (owner_id is None or q.owner_id == owner_id)
            and (scope is None or q.scope is scope)
            and (status is None or q.status is status)
        ]
        return sorted(questions, key=lambda q: (q.code, q.version))

    def _versions_of(self, code: str, owner_id: Optional[str]) -> List[Question]:
        return sorted(
            (q for q in self._questions.values() if q.code == code and q.owner_id == owner_id),
            key=lambda q: q.version,
        )

    def _check_ownership(
        self,
        ctx: RequestContext,
        scope: QuestionScope,
        owner_id: Optional[str],
        owner_type: Optional[OwnerType],
    ) -> None:
        if scope.is_system:
            if owner_id is not None:
                raise ValidationError(f"{scope.value} questions have no owner")
            return
        if owner_id is None or owner_type is None:
            raise ValidationError(f"{scope.value} questions require owner_id and owner_type")
        if scope is QuestionScope.LENDER:
            if owner_type is not OwnerType.LENDER:
                raise ValidationError("LENDER questions must be owned by a lender")
            self.get_lender(ctx, owner_id)
