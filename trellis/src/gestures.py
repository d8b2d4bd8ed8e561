"""Drag gesture interpretation.

Maps the pointer position over a target row to a candidate operation:

- top quarter: drop before the target (same level)
- bottom quarter: drop after the target (same level)
- middle band, right half: nest under the target
- middle band, left half: drop before the target

The result is only a candidate and must pass the hierarchy validator before being shown or applied.
"""

from __future__ import annotations

from trellis.src.config import EngineConfig
from trellis.src.models import Operation


class GestureInterpreter:
    """Convert pointer coordinates into a candidate operation.

    Args:
        config: Zone thresholds. Uses defaults when None.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()

    def interpret(
        self,
        dragged_id: str,
        target_id: str,
        x: float,
        y: float,
        width: float,
        height: float,
    ) -> Operation:
        """Propose an operation for a pointer over the target row.

        Args:
            dragged_id: ID of the node being dragged.
            target_id: ID of the row under the pointer.
            x: Pointer x relative to the row's left edge.
            y: Pointer y relative to the row's top edge.
            width: Row width.
            height: Row height.

        Returns:
            BEFORE, AFTER, CHILD, or NO_OP.
        """
        if dragged_id == target_id:
            return Operation.NO_OP
        if width <= 0 or height <= 0:
            return Operation.NO_OP

        cfg = self._config
        ny = y / height
        if ny < cfg.before_zone:
            return Operation.BEFORE
        if ny > cfg.after_zone:
            return Operation.AFTER

        nx = x / width
        if nx > cfg.child_zone_x:
            return Operation.CHILD
        return Operation.BEFORE
