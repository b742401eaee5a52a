"""
Temporal Layer

RESPONSIBILITY: Scenario event log, state projection, replay
ALLOWED INPUTS: RequestContext plus event type and payload
OUTPUTS: ScenarioEvent, Projection

WHAT THIS LAYER MUST NOT DO:
============================
- Read the question catalog or evaluate conditions
- Modify or delete appended events
- Derive state from anything but the log

BOUNDARY ENFORCEMENT:
=====================
- The log is the only writer of scenario history
- Projection is a pure fold; replay never writes
"""

from .clock import LogicalClock
from .event_log import ScenarioEventLog
from .projector import TreeIndex, allowed, apply, empty, progress_of, project
from .replay import ReplayEngine, ReplayResult

__all__ = [
    'LogicalClock',
    'ScenarioEventLog',
    'TreeIndex',
    'allowed',
    'apply',
    'empty',
    'progress_of',
    'project',
    'ReplayEngine',
    'ReplayResult',
]
