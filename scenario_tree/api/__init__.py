"""
API Layer

RESPONSIBILITY: HTTP surface over the backend
ALLOWED INPUTS: JSON request bodies, caller identity headers
OUTPUTS: JSON views of contracts, stable error bodies

WHAT THIS LAYER MUST NOT DO:
============================
- Hold scenario state of its own
- Decide visibility, validity or lifecycle (the service does)
"""

from .server import app, create_app

__all__ = [
    'app',
    'create_app',
]
