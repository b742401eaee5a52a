"""
Scenario Layer

RESPONSIBILITY: Runtime actions on scenarios, answer feed, families
ALLOWED INPUTS: RequestContext plus action arguments
OUTPUTS: ActionResult (events, projection, availability)

WHAT THIS LAYER MUST NOT DO:
============================
- Write scenario state anywhere but the event log
- Change trees or questions
"""

from .service import ActionResult, ScenarioService

__all__ = [
    'ActionResult',
    'ScenarioService',
]
