"""
Error Taxonomy
==============

Exceptions raised across the public API. Each carries a stable ErrorCode
and can be converted to the immutable Error record for storage/transport.

Recoverable: ValidationError, ProtectedQuestionError, QuestionInUse,
TreePublishValidationError, ConcurrentModificationError (retry with the
current version).
Unreachable through the public API: ImmutableLogViolation.
"""

from __future__ import annotations
from typing import Dict, Optional, Sequence, Tuple

from .contracts.base import Error, ErrorCode, utc_now


class ScenarioTreeError(Exception):
    """Base class: a stable code plus a human-readable explanation."""

    code: ErrorCode = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, context: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, str] = dict(context or {})

    def to_error(self) -> Error:
        return Error(
            code=self.code,
            message=self.message,
            timestamp=utc_now(),
            context=tuple(sorted(self.context.items())),
        )


class ValidationError(ScenarioTreeError):
    """Input (usually an answer) failed its schema. No event was appended."""
    code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, errors: Sequence[str] = (), context: Optional[Dict[str, str]] = None):
        super().__init__(message, context)
        self.errors: Tuple[str, ...] = tuple(errors)


class NotFoundError(ScenarioTreeError):
    code = ErrorCode.NOT_FOUND


class DuplicateError(ScenarioTreeError):
    code = ErrorCode.DUPLICATE


class DuplicateQuestionError(DuplicateError):
    pass


class ProtectedQuestionError(ScenarioTreeError):
    """CORE/STANDARD questions cannot be renamed or deleted."""
    code = ErrorCode.PROTECTED_QUESTION


class QuestionInUse(ScenarioTreeError):
    """Question is referenced by active scenarios."""
    code = ErrorCode.QUESTION_IN_USE


class InvalidLifecycleTransition(ScenarioTreeError):
    code = ErrorCode.INVALID_LIFECYCLE_TRANSITION


class TreeStructureError(ScenarioTreeError):
    code = ErrorCode.TREE_STRUCTURE_INVALID


class TreeImmutableError(ScenarioTreeError):
    """Published trees cannot be edited in place."""
    code = ErrorCode.TREE_IMMUTABLE


class TreePublishValidationError(ScenarioTreeError):
    code = ErrorCode.TREE_PUBLISH_INVALID

    def __init__(self, message: str, report=None, context: Optional[Dict[str, str]] = None):
        super().__init__(message, context)
        self.report = report


class ImmutableLogViolation(ScenarioTreeError):
    code = ErrorCode.IMMUTABLE_LOG_VIOLATION


class ConcurrentModificationError(ScenarioTreeError):
    code = ErrorCode.CONCURRENT_MODIFICATION

    def __init__(self, message: str, expected_version: int, current_version: int):
        super().__init__(message, {
            "expected_version": str(expected_version),
            "current_version": str(current_version),
        })
        self.expected_version = expected_version
        self.current_version = current_version


class InvalidStateTransition(ScenarioTreeError):
    code = ErrorCode.INVALID_STATE_TRANSITION


class TimelineCorruption(ScenarioTreeError):
    """Persisted log failed sequence or hash-chain verification on load."""
    code = ErrorCode.TIMELINE_CORRUPTION
