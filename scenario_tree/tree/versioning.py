"""
Tree Version Lineage
====================

Trees are versioned by copy: editing a published tree means starting a
new draft whose parent_tree_id points at it. Scenarios keep the tree_id
they started on, so in-flight scenarios are never affected.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..contracts.tree import Tree


@dataclass(frozen=True)
class TreeLineage:
    """Version chain of one tree, root first."""
    versions: Tuple[Tree, ...]

    @property
    def latest_published(self) -> Optional[Tree]:
        published = [t for t in self.versions if t.is_published]
        return published[-1] if published else None


def build_lineage(trees: Dict[str, Tree], tree_id: str) -> TreeLineage:
    """
    Walk up to the root through parent_tree_id, then down through the
    highest-version child at each step.
    """
    chain: List[Tree] = []
    current: Optional[Tree] = trees.get(tree_id)
    seen = set()
    while current is not None and current.tree_id not in seen:
        seen.add(current.tree_id)
        chain.append(current)
        current = trees.get(current.parent_tree_id) if current.parent_tree_id else None
    chain.reverse()

    children: Dict[str, List[Tree]] = {}
    for tree in trees.values():
        if tree.parent_tree_id:
            children.setdefault(tree.parent_tree_id, []).append(tree)

    tail = chain[-1] if chain else None
    while tail is not None:
        candidates = [t for t in children.get(tail.tree_id, []) if t.tree_id not in seen]
        if not candidates:
            break
        tail = max(candidates, key=lambda t: (t.version, t.created_at))
        seen.add(tail.tree_id)
        chain.append(tail)

    return TreeLineage(versions=tuple(chain))
