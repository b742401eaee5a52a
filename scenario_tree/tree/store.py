"""
Tree Store
==========

Versioned, content-addressed scenario trees.

GUARANTEES:
===========
1. Identical node content within a tree collapses to one node_id
2. Sibling order uses fractional keys: inserts never renumber siblings
3. Publish runs structural validation; an invalid tree stays a draft
4. Published trees are immutable; `new_version` starts an editable copy
5. Tenant isolation: a tenant sees its own trees plus MASTER trees
"""

from __future__ import annotations
from collections import Counter
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
import hashlib
import logging
import threading

import networkx as nx

from ..catalog.registry import QuestionCatalog
from ..conditions.store import ConditionStore
from ..contracts.base import RequestContext, new_id
from ..contracts.catalog import QuestionStatus
from ..contracts.conditions import NodeRule
from ..contracts.tree import (
    KINDS_WITH_QUESTION, KINDS_WITHOUT_QUESTION, BehaviorConfig, NodeKind,
    Tree, TreeNode, TreeType, ValidationIssue, ValidationReport,
)
from ..errors import (
    DuplicateError, NotFoundError, TreeImmutableError,
    TreePublishValidationError, TreeStructureError,
)
from ..temporal.clock import LogicalClock
from .ordering import key_between
from .versioning import TreeLineage, build_lineage


logger = logging.getLogger(__name__)


class TreeStore:

    def __init__(
        self,
        catalog: QuestionCatalog,
        conditions: ConditionStore,
        clock: Optional[LogicalClock] = None,
    ):
        self._catalog = catalog
        self._conditions = conditions
        self._clock = clock or LogicalClock.live()
        self._trees: Dict[str, Tree] = {}
        self._nodes: Dict[str, Dict[str, TreeNode]] = {}
        self._lock = threading.RLock()

    # =========================================================================
    # TREES
    # =========================================================================

    def create_tree(self, ctx: RequestContext, name: str, tree_type: TreeType = TreeType.TENANT) -> Tree:
        with self._lock:
            if any(t.tenant_id == ctx.tenant_id and t.name == name for t in self._trees.values()):
                raise DuplicateError(f"Tree {name!r} already exists", {"name": name})
            tree = Tree(
                tree_id=new_id("tree"),
                tenant_id=ctx.tenant_id,
                name=name,
                tree_type=tree_type,
                version=1,
                created_by=ctx.actor_id,
                created_at=self._clock.now(),
            )
            self._trees[tree.tree_id] = tree
            self._nodes[tree.tree_id] = {}
        logger.info("Created tree %s (%s) for tenant %s", tree.tree_id, name, ctx.tenant_id)
        return tree

    def get(self, ctx: RequestContext, tree_id: str) -> Tree:
        tree = self._trees.get(tree_id)
        if tree is None or not _visible_to(tree, ctx):
            raise NotFoundError(f"Tree {tree_id} not found", {"tree_id": tree_id})
        return tree

    def list_trees(self, ctx: RequestContext) -> List[Tree]:
        trees = [t for t in self._trees.values() if _visible_to(t, ctx)]
        return sorted(trees, key=lambda t: (t.name, t.version))

    def new_version(self, ctx: RequestContext, tree_id: str) -> Tree:
        """Copy a tree into a new draft version linked by parent_tree_id."""
        with self._lock:
            source = self._writable_owner(ctx, tree_id, allow_published=True)
            latest = max(
                (t.version for t in self._trees.values()
                 if t.tenant_id == source.tenant_id and t.name == source.name),
            )
            draft = Tree(
                tree_id=new_id("tree"),
                tenant_id=source.tenant_id,
                name=source.name,
                tree_type=source.tree_type,
                version=latest + 1,
                created_by=ctx.actor_id,
                created_at=self._clock.now(),
                parent_tree_id=source.tree_id,
            )
            self._trees[draft.tree_id] = draft
            self._nodes[draft.tree_id] = {}

            # Node ids include the tree id, so parents are re-mapped in pre-order
            remap: Dict[str, str] = {}
            for node in self.nodes(source.tree_id):
                parent = remap.get(node.parent_id) if node.parent_id else None
                copy = self._make_node(
                    draft.tree_id, node.kind, parent, node.question_id, node.stage,
                    node.display_config, node.behavior, node.rules, node.order_key,
                )
                self._nodes[draft.tree_id][copy.node_id] = copy
                remap[node.node_id] = copy.node_id

        logger.info("Tree %s version %d started from %s", draft.name, draft.version, source.tree_id)
        return draft

    def lineage(self, ctx: RequestContext, tree_id: str) -> TreeLineage:
        self.get(ctx, tree_id)
        return build_lineage(self._trees, tree_id)

    # =========================================================================
    # NODES
    # =========================================================================

    def add_node(
        self,
        ctx: RequestContext,
        tree_id: str,
        kind: NodeKind,
        parent_id: Optional[str] = None,
        question_id: Optional[str] = None,
        order_key: Optional[Decimal] = None,
        stage: Optional[str] = None,
        display_config: Optional[Dict[str, Any]] = None,
        behavior: Optional[BehaviorConfig] = None,
        rules: Sequence[NodeRule] = (),
    ) -> TreeNode:
        """
        Add a node; returns the existing node when identical content is
        already present in the tree.
        """
        with self._lock:
            self._writable_owner(ctx, tree_id)
            nodes = self._nodes[tree_id]

            if kind in KINDS_WITH_QUESTION and question_id is None:
                raise TreeStructureError(f"{kind.value} node requires a question")
            if kind in KINDS_WITHOUT_QUESTION and question_id is not None:
                raise TreeStructureError(f"{kind.value} node cannot reference a question")
            if question_id is not None:
                question = self._catalog.get(question_id)
                if question.status in (QuestionStatus.ARCHIVED, QuestionStatus.DELETED):
                    raise TreeStructureError(
                        f"Question {question.code} is {question.status.value}",
                        {"question_id": question_id},
                    )
            if parent_id is not None and parent_id not in nodes:
                raise TreeStructureError(f"Parent node {parent_id} not in tree", {"parent_id": parent_id})
            _check_rule_priorities(rules)

            node = self._make_node(
                tree_id, kind, parent_id, question_id, stage,
                dict(display_config or {}), behavior or BehaviorConfig(), tuple(rules), Decimal(0),
            )
            existing = nodes.get(node.node_id)
            if existing is not None:
                logger.debug("Node content already in tree %s: %s", tree_id, existing.node_id)
                return existing

            siblings = self._children(tree_id, parent_id)
            if order_key is None:
                order_key = key_between(siblings[-1].order_key if siblings else None, None)
            elif any(s.order_key == order_key for s in siblings):
                raise TreeStructureError(f"Order key {order_key} already used among siblings")
            node = replace(node, order_key=Decimal(order_key))
            nodes[node.node_id] = node

        logger.debug("Added %s node %s to tree %s", kind.value, node.node_id, tree_id)
        return node

    def move_node(
        self,
        ctx: RequestContext,
        tree_id: str,
        node_id: str,
        after_id: Optional[str] = None,
        before_id: Optional[str] = None,
    ) -> TreeNode:
        """
        Reposition a node among its siblings. Position is not content: the id is kept.

        `after_id` and `before_id` name the new neighbours; given both, they
        must be adjacent. Given neither, the node moves to the end.
        """
        with self._lock:
            self._writable_owner(ctx, tree_id)
            node = self.node(tree_id, node_id)
            others = [s for s in self._children(tree_id, node.parent_id) if s.node_id != node_id]
            ids = [s.node_id for s in others]
            for ref in (after_id, before_id):
                if ref is not None and ref not in ids:
                    raise TreeStructureError(f"Node {ref} is not a sibling of {node_id}")
            if after_id is not None:
                index = ids.index(after_id) + 1
                if before_id is not None and ids[index:index + 1] != [before_id]:
                    raise TreeStructureError(f"Nodes {after_id} and {before_id} are not adjacent siblings")
            elif before_id is not None:
                index = ids.index(before_id)
            else:
                index = len(others)
            low = others[index - 1].order_key if index > 0 else None
            high = others[index].order_key if index < len(others) else None
            try:
                key = key_between(low, high)
            except ValueError as exc:
                raise TreeStructureError(str(exc)) from exc
            moved = replace(node, order_key=key)
            self._nodes[tree_id][node_id] = moved
        return moved

    def node(self, tree_id: str, node_id: str) -> TreeNode:
        node = self._nodes.get(tree_id, {}).get(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found in tree {tree_id}", {"node_id": node_id})
        return node

    def children(self, ctx: RequestContext, tree_id: str, parent_id: Optional[str] = None) -> Tuple[TreeNode, ...]:
        self.get(ctx, tree_id)
        return tuple(self._children(tree_id, parent_id))

    def nodes(self, tree_id: str) -> Tuple[TreeNode, ...]:
        """All nodes in pre-order, siblings by order key."""
        ordered: List[TreeNode] = []
        pending = list(reversed(self._children(tree_id, None)))
        seen = set()
        while pending:
            node = pending.pop()
            if node.node_id in seen:
                continue
            seen.add(node.node_id)
            ordered.append(node)
            pending.extend(reversed(self._children(tree_id, node.node_id)))
        return tuple(ordered)

    def _children(self, tree_id: str, parent_id: Optional[str]) -> List[TreeNode]:
        return sorted(
            (n for n in self._nodes.get(tree_id, {}).values() if n.parent_id == parent_id),
            key=lambda n: (n.order_key, n.node_id),
        )

    @staticmethod
    def _make_node(
        tree_id: str,
        kind: NodeKind,
        parent_id: Optional[str],
        question_id: Optional[str],
        stage: Optional[str],
        display_config: Dict[str, Any],
        behavior: BehaviorConfig,
        rules: Tuple[NodeRule, ...],
        order_key: Decimal,
    ) -> TreeNode:
        content = TreeNode.content_of(
            tree_id, kind, parent_id, question_id, stage, display_config, behavior, rules,
        )
        return TreeNode(
            node_id=TreeNode.node_id_for(content),
            tree_id=tree_id,
            kind=kind,
            order_key=order_key,
            parent_id=parent_id,
            question_id=question_id,
            stage=stage,
            display_config=display_config,
            behavior=behavior,
            rules=rules,
        )

    # =========================================================================
    # VALIDATION & PUBLISH
    # =========================================================================

    def tree_hash(self, tree_id: str) -> str:
        """SHA-256 over the sorted node hashes."""
        node_hashes = sorted(n.node_hash for n in self._nodes.get(tree_id, {}).values())
        return hashlib.sha256("|".join(node_hashes).encode()).hexdigest()

    def validate(self, ctx: RequestContext, tree_id: str) -> ValidationReport:
        self.get(ctx, tree_id)
        nodes = self._nodes[tree_id]
        issues: List[ValidationIssue] = []

        def error(code: str, message: str, node_id: Optional[str] = None):
            issues.append(ValidationIssue("ERROR", code, message, node_id))

        def warning(code: str, message: str, node_id: Optional[str] = None):
            issues.append(ValidationIssue("WARNING", code, message, node_id))

        if not nodes:
            error("EMPTY_TREE", "Tree has no nodes")

        known_codes = {q.code for q in self._catalog.list()}
        structure = nx.DiGraph()
        rule_roots: List[str] = []

        for node in sorted(nodes.values(), key=lambda n: n.node_id):
            structure.add_node(node.node_id)
            if node.parent_id is not None:
                if node.parent_id not in nodes:
                    error("ORPHAN_NODE", f"Parent {node.parent_id} does not exist", node.node_id)
                else:
                    structure.add_edge(node.parent_id, node.node_id)

            if node.kind in KINDS_WITH_QUESTION and node.question_id is None:
                error("QUESTION_REQUIRED", f"{node.kind.value} node has no question", node.node_id)
            if node.kind in KINDS_WITHOUT_QUESTION and node.question_id is not None:
                error("QUESTION_FORBIDDEN", f"{node.kind.value} node references a question", node.node_id)

            if node.question_id is not None:
                try:
                    question = self._catalog.get(node.question_id)
                except NotFoundError:
                    error("MISSING_QUESTION", f"Question {node.question_id} does not exist", node.node_id)
                else:
                    if question.status in (QuestionStatus.ARCHIVED, QuestionStatus.DELETED):
                        error("ARCHIVED_QUESTION", f"Question {question.code} is {question.status.value}", node.node_id)
                    elif question.status is QuestionStatus.DEPRECATED:
                        warning("DEPRECATED_QUESTION", f"Question {question.code} is deprecated", node.node_id)
                    elif question.status is QuestionStatus.DRAFT:
                        warning("DRAFT_QUESTION", f"Question {question.code} is still a draft", node.node_id)

            priorities = Counter((r.purpose, r.priority) for r in node.rules)
            for (purpose, priority), count in sorted(priorities.items(), key=lambda i: (i[0][0].value, i[0][1])):
                if count > 1:
                    error(
                        "DUPLICATE_RULE_PRIORITY",
                        f"{count} {purpose.value} rules share priority {priority}",
                        node.node_id,
                    )
            for rule in node.rules:
                rule_roots.append(rule.condition_id)
                if rule.condition_id not in self._conditions:
                    error("MISSING_CONDITION", f"Condition {rule.condition_id} does not exist", node.node_id)
                    continue
                for code in sorted(self._conditions.question_refs(rule.condition_id)):
                    if code not in known_codes:
                        warning("UNKNOWN_QUESTION_REF", f"Condition reads unknown question {code!r}", node.node_id)

        for cycle in nx.simple_cycles(structure):
            error("NODE_CYCLE", "Parent cycle: " + " -> ".join(cycle))

        order_keys = Counter((n.parent_id, n.order_key) for n in nodes.values())
        for (parent_id, key), count in order_keys.items():
            if count > 1:
                error("DUPLICATE_ORDER_KEY", f"{count} siblings share order key {key}", parent_id)

        condition_graph = self._conditions.dependency_graph(rule_roots)
        for cycle in nx.simple_cycles(condition_graph):
            error("CONDITION_CYCLE", "Condition cycle: " + " -> ".join(cycle))
        for condition_id, missing in condition_graph.nodes(data="missing"):
            if missing and condition_id not in rule_roots:
                error("MISSING_CONDITION", f"Child condition {condition_id} does not exist")

        return ValidationReport(tree_id=tree_id, issues=tuple(issues))

    def publish(self, ctx: RequestContext, tree_id: str) -> Tree:
        with self._lock:
            tree = self._writable_owner(ctx, tree_id)
            report = self.validate(ctx, tree_id)
            if not report.is_valid:
                self._trees[tree_id] = replace(
                    tree, validation_status=report.status, validation_report=report,
                )
                logger.warning("Tree %s failed publish validation with %d error(s)", tree_id, len(report.errors))
                raise TreePublishValidationError(
                    f"Tree {tree.name} has {len(report.errors)} validation error(s)",
                    report=report,
                    context={"tree_id": tree_id},
                )
            published = replace(
                tree,
                is_published=True,
                tree_hash=self.tree_hash(tree_id),
                published_at=self._clock.now(),
                validation_status=report.status,
                validation_report=report,
            )
            self._trees[tree_id] = published
        logger.info("Published tree %s v%d (%s)", published.name, published.version, published.tree_hash[:12])
        return published

    def _writable_owner(self, ctx: RequestContext, tree_id: str, allow_published: bool = False) -> Tree:
        tree = self._trees.get(tree_id)
        if tree is None or tree.tenant_id != ctx.tenant_id:
            raise NotFoundError(f"Tree {tree_id} not found", {"tree_id": tree_id})
        if tree.is_published and not allow_published:
            raise TreeImmutableError(f"Tree {tree_id} is published", {"tree_id": tree_id})
        return tree


def _visible_to(tree: Tree, ctx: RequestContext) -> bool:
    return tree.tenant_id == ctx.tenant_id or tree.tree_type is TreeType.MASTER


def _check_rule_priorities(rules: Sequence[NodeRule]) -> None:
    keys = Counter((r.purpose, r.priority) for r in rules)
    for (purpose, priority), count in keys.items():
        if count > 1:
            raise TreeStructureError(f"{count} {purpose.value} rules share priority {priority}")

