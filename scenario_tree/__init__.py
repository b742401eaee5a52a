"""
Scenario Tree Engine

Event-sourced engine for branching questionnaires ("scenario trees").

LAYER STRUCTURE:
================

1. CATALOG (catalog/)
   - Question identity, data types, lifecycle, validity windows

2. TREE STORE (tree/)
   - Versioned, content-addressed trees with fractional sibling ordering

3. CONDITIONS (conditions/)
   - Content-addressed rule conditions and a pure, total evaluator

4. TEMPORAL (temporal/)
   - Append-only per-scenario event log, projection, replay

5. NAVIGATION (navigation/)
   - Visibility / requirement / blocking per node

6. SCENARIOS (scenarios/)
   - Orchestration: action -> event -> projection -> availability

7. STORAGE, OBSERVABILITY, API
   - Event persistence, logging and audit export, HTTP surface

Scenario state is never stored directly: it is always derived from the
event log.
"""

__version__ = "0.1.0"
