"""
Tree Layer

RESPONSIBILITY: Versioned, content-addressed scenario trees
OUTPUTS: Tree, TreeNode, ValidationReport, TreeLineage

WHAT THIS LAYER MUST NOT DO:
============================
- Change in response to scenario events (authoring only)
- Edit a published tree in place
"""

from .ordering import key_between
from .store import TreeStore
from .versioning import TreeLineage, build_lineage

__all__ = [
    'TreeStore',
    'TreeLineage',
    'build_lineage',
    'key_between',
]
