"""Id-indexed forest of hierarchy nodes.

Children are derived on demand by filtering on ``parent_id``; no node
holds references to other nodes. Every walk keeps an explicit visited
set so that a corrupt snapshot containing a cycle cannot loop forever.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from typing import Any

from trellis.src.models import STRUCTURAL_FIELDS, MutationDiff, Node


class TreeError(Exception):
    """Raised for invalid forest operations."""


class NodeNotFoundError(TreeError, KeyError):
    """Raised when a node ID is not present in the forest."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Node not found"


class Forest:
    """All nodes of one hierarchy instance, indexed by ID.

    Args:
        nodes: Initial nodes. IDs must be unique.

    Example::

        forest = Forest([Node("a", order=1), Node("b", "a", level=1)])
        forest.is_descendant("b", "a")  # True
    """

    def __init__(self, nodes: Iterable[Node] = ()) -> None:
        self._nodes: dict[str, Node] = {}
        for node in nodes:
            self.add(node)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes.values())

    # ---------------------------------------------------------------
    # Lookup
    # ---------------------------------------------------------------

    def add(self, node: Node) -> None:
        """Insert a node.

        Raises:
            TreeError: If a node with the same ID already exists.
        """
        if node.id in self._nodes:
            raise TreeError(f"Node already exists: {node.id}")
        self._nodes[node.id] = node

    def get(self, node_id: str) -> Node | None:
        """Return the node or None."""
        return self._nodes.get(node_id)

    def require(self, node_id: str) -> Node:
        """Return the node or raise NodeNotFoundError."""
        node = self._nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(f"Node not found: {node_id}")
        return node

    def children(self, parent_id: str | None) -> list[Node]:
        """Direct children of *parent_id* in sibling order.

        Passing None returns the roots.
        """
        kids = [n for n in self._nodes.values() if n.parent_id == parent_id]
        return sorted(kids, key=lambda n: n.sort_key)

    def roots(self) -> list[Node]:
        """Nodes without a parent, in sibling order."""
        return self.children(None)

    def ancestors(self, node_id: str) -> list[str]:
        """IDs on the parent chain of *node_id*, nearest first.

        Stops at a root, at a dangling parent reference, or when the
        chain revisits a node.
        """
        chain: list[str] = []
        visited = {node_id}
        current = self._nodes.get(node_id)
        while current is not None and current.parent_id is not None:
            if current.parent_id in visited:
                break
            visited.add(current.parent_id)
            chain.append(current.parent_id)
            current = self._nodes.get(current.parent_id)
        return chain

    def descendants(self, node_id: str) -> list[Node]:
        """All nodes below *node_id*, breadth first, excluding itself."""
        found: list[Node] = []
        visited = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for child in self.children(current):
                if child.id in visited:
                    continue
                visited.add(child.id)
                found.append(child)
                queue.append(child.id)
        return found

    def is_descendant(self, candidate_id: str, ancestor_id: str) -> bool:
        """Check if *candidate_id* lies below *ancestor_id*.

        Walks up the parent chain from the candidate. Irreflexive: a
        node is never its own descendant.

        Args:
            candidate_id: Potential descendant ID.
            ancestor_id: Potential ancestor ID.

        Returns:
            True if the ancestor is reachable via parent links.
        """
        if candidate_id == ancestor_id:
            return False
        visited: set[str] = set()
        current = self._nodes.get(candidate_id)
        while current is not None and current.parent_id is not None:
            if current.id in visited:
                break
            visited.add(current.id)
            if current.parent_id == ancestor_id:
                return True
            current = self._nodes.get(current.parent_id)
        return False

    # ---------------------------------------------------------------
    # Mutation
    # ---------------------------------------------------------------

    def apply(self, diff: MutationDiff) -> None:
        """Write the new field values of *diff* into the nodes."""
        for change in diff.changes:
            node = self.require(change.node_id)
            for name, value in change.fields.items():
                _set_field(node, name, value)

    def revert(self, diff: MutationDiff) -> None:
        """Restore the previous field values recorded in *diff*."""
        for change in reversed(diff.changes):
            node = self.require(change.node_id)
            for name, value in change.previous.items():
                _set_field(node, name, value)

    # ---------------------------------------------------------------
    # Views and checks
    # ---------------------------------------------------------------

    def expected_level(self, node_id: str) -> int | None:
        """Depth implied by the parent chain, or None if it never ends at a root."""
        depth = 0
        visited = {node_id}
        current = self.require(node_id)
        while current.parent_id is not None:
            parent = self._nodes.get(current.parent_id)
            if parent is None or parent.id in visited:
                return None
            visited.add(parent.id)
            depth += 1
            current = parent
        return depth

    def check_invariants(self) -> list[str]:
        """Collect violations of acyclicity and depth consistency.

        Returns:
            Violation messages; empty when the forest is sound.
        """
        violations: list[str] = []
        for node in self._nodes.values():
            if node.parent_id is not None and node.parent_id not in self._nodes:
                violations.append(f"Node {node.id} references missing parent {node.parent_id}")
                continue
            expected = self.expected_level(node.id)
            if expected is None:
                violations.append(f"Node {node.id} is part of a parent cycle")
            elif node.level != expected:
                violations.append(f"Node {node.id} has level {node.level}, expected {expected}")
        return violations

    def flatten(self) -> list[Node]:
        """Nodes in display order: each node followed by its subtree.

        Nodes with a dangling parent are treated as roots. Nodes only
        reachable through a cycle are appended at the end.
        """
        ordered: list[Node] = []
        visited: set[str] = set()
        tops = [
            n
            for n in self._nodes.values()
            if n.parent_id is None or n.parent_id not in self._nodes
        ]
        stack = list(reversed(sorted(tops, key=lambda n: n.sort_key)))
        while stack:
            node = stack.pop()
            if node.id in visited:
                continue
            visited.add(node.id)
            ordered.append(node)
            stack.extend(reversed(self.children(node.id)))
        ordered.extend(
            sorted(
                (n for n in self._nodes.values() if n.id not in visited),
                key=lambda n: n.sort_key,
            )
        )
        return ordered

    def build_tree(self) -> list[dict[str, Any]]:
        """Nested tree for display.

        Returns:
            List of root entries with 'node' and 'children' keys.
        """
        placed: dict[str, dict[str, Any]] = {}
        roots: list[dict[str, Any]] = []
        for node in self.flatten():
            entry = {"node": node.to_dict(), "children": []}
            parent_entry = placed.get(node.parent_id) if node.parent_id else None
            # A parent not yet placed means a dangling reference or a cycle.
            if parent_entry is None:
                roots.append(entry)
            else:
                parent_entry["children"].append(entry)
            placed[node.id] = entry
        return roots

    def to_records(self) -> list[dict[str, Any]]:
        """Serialize every node in display order."""
        return [n.to_dict() for n in self.flatten()]


def _set_field(node: Node, name: str, value: Any) -> None:
    """Assign a structural field on *node*."""
    if name not in STRUCTURAL_FIELDS:
        raise TreeError(f"Field is not structural: {name}")
    setattr(node, name, value)
