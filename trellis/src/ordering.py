"""Sibling order-key allocation.

Gap insertion: a moved node takes its target's key shifted by a fixed
offset. Keys are never renormalized, so repeated insertions at the same
spot produce equal keys and siblings then fall back to id order.
"""

from __future__ import annotations

from collections.abc import Iterable

from trellis.src.models import Node, Operation


class OrderAllocator:
    """Compute order keys for insertion points.

    Args:
        gap: Offset from the target's key.
        root_step: Spacing used when appending after a set of keys.
    """

    def __init__(self, gap: float = 0.5, root_step: float = 1.0) -> None:
        self.gap = gap
        self.root_step = root_step

    def beside(self, target: Node, side: Operation) -> float:
        """Key for a node placed directly before or after *target*.

        Raises:
            ValueError: If *side* is not BEFORE or AFTER.
        """
        if side == Operation.BEFORE:
            return target.order - self.gap
        if side == Operation.AFTER:
            return target.order + self.gap
        raise ValueError(f"Side must be before or after, got {side.value}")

    def for_child(self, parent: Node) -> float:
        """Key for a node nested under *parent*."""
        return parent.order + self.gap

    def after_all(self, orders: Iterable[float]) -> float:
        """Key ordered after every key in *orders*."""
        keys = list(orders)
        if not keys:
            return self.root_step
        return max(keys) + self.root_step
