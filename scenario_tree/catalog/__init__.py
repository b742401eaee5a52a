"""
Question Catalog Layer

RESPONSIBILITY: Question identity, data types, lifecycle, lender cascade
OUTPUTS: Question records, validated AnswerValues

WHAT THIS LAYER MUST NOT DO:
============================
- Read or write scenario events
- Decide visibility (that is navigation's job)
"""

from .registry import QuestionCatalog, UsageProbe
from .validation import check_schema, validate_answer

__all__ = [
    'QuestionCatalog',
    'UsageProbe',
    'check_schema',
    'validate_answer',
]
