"""Hierarchy validation for proposed structural changes.

A single rule table decides whether an operation keeps the forest a
valid tree. Rules are evaluated in order and the first match blocks
the operation. All checks run against the pre-move snapshot.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from trellis.src.forest import Forest
from trellis.src.models import BlockReason, Node, Operation

_SAME_LEVEL = frozenset({Operation.BEFORE, Operation.AFTER})


@dataclass(frozen=True)
class HierarchyRule:
    """One entry of the validation rule table.

    Attributes:
        name: Short identifier used in logs.
        applies_to: Operations the rule inspects.
        reason: Block reason reported when the rule matches.
        violated: Predicate over (forest, dragged, target).
    """

    name: str
    applies_to: frozenset[Operation]
    reason: BlockReason
    violated: Callable[[Forest, Node, Node], bool]


def _creates_cycle(forest: Forest, dragged: Node, target: Node) -> bool:
    if dragged.id == target.id:
        return True
    return forest.is_descendant(target.id, dragged.id) or forest.is_descendant(
        dragged.id, target.id
    )


def _root_into_child_slot(forest: Forest, dragged: Node, target: Node) -> bool:
    return dragged.level == 0 and target.level > 0


def _root_beside_own_descendant(forest: Forest, dragged: Node, target: Node) -> bool:
    return dragged.level == 0 and forest.is_descendant(target.id, dragged.id)


def _beside_own_descendant(forest: Forest, dragged: Node, target: Node) -> bool:
    return forest.is_descendant(target.id, dragged.id)


HIERARCHY_RULES: tuple[HierarchyRule, ...] = (
    HierarchyRule(
        name="cycle_guard",
        applies_to=frozenset({Operation.CHILD}),
        reason=BlockReason.CYCLE_DETECTED,
        violated=_creates_cycle,
    ),
    HierarchyRule(
        name="demotion_guard",
        applies_to=_SAME_LEVEL,
        reason=BlockReason.INVALID_DEMOTION,
        violated=_root_into_child_slot,
    ),
    HierarchyRule(
        name="descendant_conflict_guard",
        applies_to=_SAME_LEVEL,
        reason=BlockReason.INVALID_DEMOTION,
        violated=_root_beside_own_descendant,
    ),
    # A non-root placed beside its own descendant would become its own ancestor.
    HierarchyRule(
        name="sibling_of_descendant_guard",
        applies_to=_SAME_LEVEL,
        reason=BlockReason.CYCLE_DETECTED,
        violated=_beside_own_descendant,
    ),
)


@dataclass(frozen=True)
class ValidationResult:
    """Verdict of the validator.

    Attributes:
        operation: The operation that was checked.
        reason: Block reason, None when allowed.
        rule: Name of the rule that blocked, if any.
    """

    operation: Operation
    reason: BlockReason | None = None
    rule: str | None = None

    @property
    def allowed(self) -> bool:
        """True when no rule blocked the operation."""
        return self.reason is None


class HierarchyValidator:
    """Decide whether an operation preserves tree invariants.

    Args:
        rules: Rule table, evaluated in order. Defaults to HIERARCHY_RULES.
    """

    def __init__(self, rules: tuple[HierarchyRule, ...] = HIERARCHY_RULES) -> None:
        self._rules = rules

    def validate(
        self,
        forest: Forest,
        dragged_id: str,
        target_id: str | None,
        operation: Operation,
    ) -> ValidationResult:
        """Check *operation* of *dragged_id* relative to *target_id*.

        Args:
            forest: Pre-move snapshot.
            dragged_id: Node being moved.
            target_id: Target row or new parent; None for ROOT moves.
            operation: Candidate operation.

        Returns:
            ValidationResult, allowed or blocked with a reason.

        Raises:
            NodeNotFoundError: If either ID is unknown.
        """
        dragged = forest.require(dragged_id)
        if operation == Operation.NO_OP:
            return ValidationResult(operation, BlockReason.NO_OP)
        if operation == Operation.ROOT:
            return ValidationResult(operation)
        if target_id is None:
            raise ValueError(f"Operation {operation.value} needs a target")

        target = forest.require(target_id)
        if operation in _SAME_LEVEL and dragged.id == target.id:
            return ValidationResult(operation, BlockReason.NO_OP)

        for rule in self._rules:
            if operation in rule.applies_to and rule.violated(forest, dragged, target):
                return ValidationResult(operation, rule.reason, rule.name)
        return ValidationResult(operation)
