"""
Condition Layer

RESPONSIBILITY: Content-addressed condition storage and total evaluation
OUTPUTS: condition ids, booleans

WHAT THIS LAYER MUST NOT DO:
============================
- Read the clock (the reference date comes in the EvaluationContext)
- Raise from evaluate()
"""

from .engine import ConditionEngine, EvaluationContext
from .operands import FUNCTIONS, OperandError, resolve
from .store import ConditionStore

__all__ = [
    'ConditionEngine',
    'ConditionStore',
    'EvaluationContext',
    'FUNCTIONS',
    'OperandError',
    'resolve',
]
