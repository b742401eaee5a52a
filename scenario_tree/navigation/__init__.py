"""
Navigation Layer

RESPONSIBILITY: Visibility, requirement and blocking per node
ALLOWED INPUTS: tree nodes, a Projection, a reference date
OUTPUTS: NodeAvailability tuples, NavigationState summaries

WHAT THIS LAYER MUST NOT DO:
============================
- Append events or mutate projections
- Clear answers of nodes that become hidden
"""

from .cache import AvailabilityCache, NavigationConfig
from .engine import (
    NavigationEngine, evaluation_context, hidden_question_ids,
    missing_required, open_requirements, summarize,
)

__all__ = [
    'AvailabilityCache',
    'NavigationConfig',
    'NavigationEngine',
    'evaluation_context',
    'hidden_question_ids',
    'missing_required',
    'open_requirements',
    'summarize',
]
