"""Tests for SQLite tree storage."""

from __future__ import annotations

from pathlib import Path

import pytest

from trellis.src.engine import MutationEngine
from trellis.src.models import MutationDiff, Node, NodeChange, Operation, PersistenceFailure
from trellis.src.storage import StorageGateway, TreeStorage, TreeStorageError


class TestSchema:
    """Schema creation and connection handling."""

    def test_initialize_is_repeatable(self, memory_store: TreeStorage) -> None:
        memory_store.initialize_schema()
        assert memory_store.list_nodes("kpis") == []

    def test_file_database(self, tmp_path: Path) -> None:
        db = tmp_path / "trellis.db"
        with TreeStorage(db) as store:
            store.initialize_schema()
            store.add_root("kpis", {"kpi": "Revenue"}, node_id="revenue")

        with TreeStorage(db) as store:
            node = store.get_node("kpis", "revenue")
            assert node is not None
            assert node.payload == {"kpi": "Revenue"}


class TestNodes:
    """Creating, reading and listing nodes."""

    def test_create_and_get(self, memory_store: TreeStorage) -> None:
        memory_store.create_node("kpis", Node(id="a", order=1.0, payload={"x": 1}))
        node = memory_store.get_node("kpis", "a")
        assert node == Node(id="a", order=1.0, payload={"x": 1})

    def test_duplicate_rejected(self, memory_store: TreeStorage) -> None:
        memory_store.create_node("kpis", Node(id="a"))
        with pytest.raises(TreeStorageError, match="already exists"):
            memory_store.create_node("kpis", Node(id="a"))

    def test_same_id_in_other_forest(self, memory_store: TreeStorage) -> None:
        memory_store.create_node("kpis", Node(id="a"))
        memory_store.create_node("records", Node(id="a"))
        assert memory_store.list_forest_ids() == ["kpis", "records"]

    def test_get_missing(self, memory_store: TreeStorage) -> None:
        assert memory_store.get_node("kpis", "ghost") is None

    def test_add_root_goes_last(self, populated_store: TreeStorage) -> None:
        node = populated_store.add_root("kpis", {"kpi": "Margin"})
        assert node.order == 4.0
        assert node.level == 0
        assert node.id.startswith("node_")

    def test_add_root_to_empty_forest(self, memory_store: TreeStorage) -> None:
        assert memory_store.add_root("fresh").order == 1.0

    def test_list_nodes_order(self, populated_store: TreeStorage) -> None:
        ids = [n.id for n in populated_store.list_nodes("kpis")]
        assert ids == ["revenue", "costs", "headcount", "mrr", "churn", "mrr_eu"]

    def test_load_forest(self, populated_store: TreeStorage) -> None:
        forest = populated_store.load_forest("kpis")
        assert len(forest) == 6
        assert forest.check_invariants() == []


class TestApplyDiff:
    """Transactional diff writes."""

    def test_writes_all_changes(self, populated_store: TreeStorage) -> None:
        diff = MutationDiff(
            Operation.CHILD,
            "costs",
            "headcount",
            [NodeChange("costs", {"parent_id": "headcount", "level": 1, "order": 3.5})],
        )
        populated_store.apply_diff("kpis", diff)
        node = populated_store.get_node("kpis", "costs")
        assert node is not None
        assert (node.parent_id, node.level, node.order) == ("headcount", 1, 3.5)

    def test_failure_writes_nothing(self, populated_store: TreeStorage) -> None:
        diff = MutationDiff(
            Operation.CHILD,
            "costs",
            "headcount",
            [
                NodeChange("costs", {"parent_id": "headcount", "level": 1}),
                NodeChange("ghost", {"level": 2}),
            ],
        )
        with pytest.raises(TreeStorageError, match="ghost"):
            populated_store.apply_diff("kpis", diff)

        node = populated_store.get_node("kpis", "costs")
        assert node is not None
        assert node.parent_id is None
        assert node.level == 0


class TestDeleteNode:
    """Deletion and re-parenting of children."""

    def test_children_move_up(self, populated_store: TreeStorage) -> None:
        assert populated_store.delete_node("kpis", "mrr")

        forest = populated_store.load_forest("kpis")
        assert "mrr" not in forest
        mrr_eu = forest.require("mrr_eu")
        assert (mrr_eu.parent_id, mrr_eu.level) == ("revenue", 1)
        assert forest.check_invariants() == []

    def test_root_children_become_roots(self, populated_store: TreeStorage) -> None:
        populated_store.delete_node("kpis", "revenue")

        forest = populated_store.load_forest("kpis")
        assert forest.require("mrr").parent_id is None
        assert forest.require("mrr").level == 0
        assert forest.require("mrr_eu").level == 1
        assert forest.check_invariants() == []

    def test_delete_missing(self, populated_store: TreeStorage) -> None:
        assert not populated_store.delete_node("kpis", "ghost")

    def test_failed_write_changes_nothing(self, populated_store: TreeStorage) -> None:
        populated_store._conn.execute(
            "CREATE TRIGGER lock_mrr_eu BEFORE UPDATE ON nodes "
            "WHEN NEW.id = 'mrr_eu' BEGIN SELECT RAISE(ABORT, 'locked row'); END"
        )
        before = [n.to_dict() for n in populated_store.list_nodes("kpis")]

        with pytest.raises(TreeStorageError, match="locked row"):
            populated_store.delete_node("kpis", "revenue")

        populated_store._conn.commit()
        assert [n.to_dict() for n in populated_store.list_nodes("kpis")] == before


class TestStorageGateway:
    """Engine persistence through storage."""

    @pytest.mark.asyncio
    async def test_engine_changes_are_stored(self, populated_store: TreeStorage) -> None:
        engine = MutationEngine(
            populated_store.load_forest("kpis"), populated_store.gateway("kpis")
        )
        outcome = await engine.apply_as_child("revenue", "costs")

        assert outcome.applied
        stored = populated_store.load_forest("kpis")
        assert stored.to_records() == engine.forest.to_records()
        assert stored.require("mrr_eu").level == 3

    @pytest.mark.asyncio
    async def test_storage_error_is_rejection(self, populated_store: TreeStorage) -> None:
        gateway = StorageGateway(populated_store, "kpis")
        diff = MutationDiff(Operation.ROOT, "ghost", None, [NodeChange("ghost", {"level": 0})])

        result = await gateway.persist(diff)

        assert not result.success
        assert result.failure == PersistenceFailure.SERVER_REJECTED
        assert "ghost" in result.detail

    @pytest.mark.asyncio
    async def test_empty_diff_skips_storage(self, populated_store: TreeStorage) -> None:
        gateway = StorageGateway(populated_store, "kpis")
        diff = MutationDiff(Operation.ROOT, "ghost", None)

        result = await gateway.persist(diff)

        assert result.success

    @pytest.mark.asyncio
    async def test_stale_snapshot_rolls_back(self, populated_store: TreeStorage) -> None:
        engine = MutationEngine(
            populated_store.load_forest("kpis"), populated_store.gateway("kpis")
        )
        populated_store.delete_node("kpis", "headcount")
        before = engine.forest.to_records()

        outcome = await engine.apply_as_child("headcount", "costs")

        assert outcome.failure == PersistenceFailure.SERVER_REJECTED
        assert engine.forest.to_records() == before
