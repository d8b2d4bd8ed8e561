"""Tests for the hierarchy validator rule table."""

from __future__ import annotations

import pytest

from trellis.src.forest import Forest, NodeNotFoundError
from trellis.src.models import BlockReason, Node, Operation
from trellis.src.validation import (
    HIERARCHY_RULES,
    HierarchyRule,
    HierarchyValidator,
    ValidationResult,
)


@pytest.fixture
def validator() -> HierarchyValidator:
    """Validator with the default rule table."""
    return HierarchyValidator()


class TestCycleGuard:
    """Child moves that would create a cycle."""

    def test_root_under_its_grandchild(self, validator: HierarchyValidator, chain: Forest) -> None:
        result = validator.validate(chain, "A", "C", Operation.CHILD)
        assert result.reason == BlockReason.CYCLE_DETECTED
        assert result.rule == "cycle_guard"

    def test_child_onto_own_parent(self, validator: HierarchyValidator, chain: Forest) -> None:
        result = validator.validate(chain, "C", "B", Operation.CHILD)
        assert result.reason == BlockReason.CYCLE_DETECTED

    def test_child_onto_own_grandparent(self, validator: HierarchyValidator, chain: Forest) -> None:
        result = validator.validate(chain, "C", "A", Operation.CHILD)
        assert result.reason == BlockReason.CYCLE_DETECTED

    def test_self_parenting(self, validator: HierarchyValidator, chain: Forest) -> None:
        result = validator.validate(chain, "B", "B", Operation.CHILD)
        assert result.reason == BlockReason.CYCLE_DETECTED

    def test_unrelated_roots_allowed(
        self, validator: HierarchyValidator, two_roots: Forest
    ) -> None:
        result = validator.validate(two_roots, "B", "A", Operation.CHILD)
        assert result.allowed
        assert result.operation == Operation.CHILD

    def test_into_other_branch_allowed(
        self, validator: HierarchyValidator, kpi_forest: Forest
    ) -> None:
        assert validator.validate(kpi_forest, "mrr", "costs", Operation.CHILD).allowed


class TestDemotionGuards:
    """Same-level moves involving roots."""

    @pytest.mark.parametrize("side", [Operation.BEFORE, Operation.AFTER])
    def test_root_beside_child_blocked(
        self, validator: HierarchyValidator, parent_child: Forest, side: Operation
    ) -> None:
        result = validator.validate(parent_child, "A", "B", side)
        assert result.reason == BlockReason.INVALID_DEMOTION
        assert result.rule == "demotion_guard"

    def test_root_beside_foreign_child_blocked(
        self, validator: HierarchyValidator, kpi_forest: Forest
    ) -> None:
        result = validator.validate(kpi_forest, "costs", "mrr", Operation.AFTER)
        assert result.reason == BlockReason.INVALID_DEMOTION

    def test_descendant_conflict_with_corrupt_level(self, validator: HierarchyValidator) -> None:
        # Target claims level 0 but hangs below the dragged root.
        forest = Forest([Node(id="A", order=1.0), Node(id="B", parent_id="A", level=0)])
        result = validator.validate(forest, "A", "B", Operation.BEFORE)
        assert result.reason == BlockReason.INVALID_DEMOTION
        assert result.rule == "descendant_conflict_guard"

    def test_promotion_allowed(self, validator: HierarchyValidator, parent_child: Forest) -> None:
        assert validator.validate(parent_child, "B", "A", Operation.BEFORE).allowed

    def test_root_reorder_allowed(self, validator: HierarchyValidator, two_roots: Forest) -> None:
        assert validator.validate(two_roots, "B", "A", Operation.BEFORE).allowed

    def test_child_to_child_allowed(
        self, validator: HierarchyValidator, kpi_forest: Forest
    ) -> None:
        assert validator.validate(kpi_forest, "churn", "mrr_eu", Operation.AFTER).allowed

    def test_non_root_beside_own_descendant(
        self, validator: HierarchyValidator, kpi_forest: Forest
    ) -> None:
        result = validator.validate(kpi_forest, "mrr", "mrr_eu", Operation.AFTER)
        assert result.reason == BlockReason.CYCLE_DETECTED
        assert result.rule == "sibling_of_descendant_guard"


class TestSpecialCases:
    """No-ops, root moves, unknown nodes, custom tables."""

    def test_noop_blocked(self, validator: HierarchyValidator, two_roots: Forest) -> None:
        assert validator.validate(two_roots, "A", "A", Operation.NO_OP).reason == BlockReason.NO_OP

    def test_same_level_onto_itself_is_noop(
        self, validator: HierarchyValidator, two_roots: Forest
    ) -> None:
        result = validator.validate(two_roots, "A", "A", Operation.AFTER)
        assert result.reason == BlockReason.NO_OP

    def test_root_move_always_allowed(
        self, validator: HierarchyValidator, kpi_forest: Forest
    ) -> None:
        assert validator.validate(kpi_forest, "mrr_eu", None, Operation.ROOT).allowed

    def test_missing_target_for_child(
        self, validator: HierarchyValidator, two_roots: Forest
    ) -> None:
        with pytest.raises(ValueError, match="needs a target"):
            validator.validate(two_roots, "A", None, Operation.CHILD)

    def test_unknown_node(self, validator: HierarchyValidator, two_roots: Forest) -> None:
        with pytest.raises(NodeNotFoundError):
            validator.validate(two_roots, "A", "ghost", Operation.CHILD)
        with pytest.raises(NodeNotFoundError):
            validator.validate(two_roots, "ghost", "A", Operation.CHILD)

    def test_corrupt_cycle_does_not_hang(self, validator: HierarchyValidator) -> None:
        forest = Forest(
            [
                Node(id="x", parent_id="y", level=1),
                Node(id="y", parent_id="x", level=1),
                Node(id="r", order=1.0),
            ]
        )
        assert validator.validate(forest, "r", "x", Operation.CHILD).allowed

    def test_custom_rule_table(self, two_roots: Forest) -> None:
        no_nesting = HierarchyRule(
            name="flat_only",
            applies_to=frozenset({Operation.CHILD}),
            reason=BlockReason.INVALID_DEMOTION,
            violated=lambda forest, dragged, target: True,
        )
        validator = HierarchyValidator(rules=(no_nesting, *HIERARCHY_RULES))
        result = validator.validate(two_roots, "B", "A", Operation.CHILD)
        assert result.rule == "flat_only"

    def test_result_allowed_property(self) -> None:
        assert ValidationResult(Operation.AFTER).allowed
        assert not ValidationResult(Operation.AFTER, BlockReason.NO_OP).allowed
