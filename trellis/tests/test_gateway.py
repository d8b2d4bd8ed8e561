"""Tests for persistence gateway adapters."""

from __future__ import annotations

from typing import Any

import pytest

from trellis.src.engine import MutationEngine
from trellis.src.forest import Forest
from trellis.src.gateway import MockGateway, NodeUpdateGateway
from trellis.src.models import (
    GatewayResult,
    MutationDiff,
    NodeChange,
    Operation,
    PersistenceFailure,
)


class RecordingUpdater:
    """Fake per-node update endpoint that fails on chosen IDs."""

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, node_id: str, fields: dict[str, Any]) -> GatewayResult:
        self.sent.append((node_id, fields))
        if node_id in self.fail_on:
            return GatewayResult.rejected(f"cannot update {node_id}")
        return GatewayResult.ok()


def _diff(*ids: str) -> MutationDiff:
    return MutationDiff(
        Operation.CHILD,
        ids[0],
        "p",
        [NodeChange(i, {"level": 2}, {"level": 1}) for i in ids],
    )


class TestNodeUpdateGateway:
    """Per-node adapter."""

    @pytest.mark.asyncio
    async def test_sends_each_change_in_order(self) -> None:
        updater = RecordingUpdater()
        result = await NodeUpdateGateway(updater).persist(_diff("a", "b", "c"))

        assert result.success
        assert [node_id for node_id, _ in updater.sent] == ["a", "b", "c"]
        assert updater.sent[0][1] == {"level": 2}

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self) -> None:
        updater = RecordingUpdater(fail_on={"b"})
        result = await NodeUpdateGateway(updater).persist(_diff("a", "b", "c"))

        assert not result.success
        assert result.failure == PersistenceFailure.SERVER_REJECTED
        assert result.detail == "cannot update b"
        assert [node_id for node_id, _ in updater.sent] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_empty_diff_sends_nothing(self) -> None:
        updater = RecordingUpdater()
        result = await NodeUpdateGateway(updater).persist(MutationDiff(Operation.AFTER, "a", "b"))
        assert result.success
        assert updater.sent == []

    @pytest.mark.asyncio
    async def test_engine_rolls_back_partial_update(self, kpi_forest: Forest) -> None:
        updater = RecordingUpdater(fail_on={"mrr"})
        engine = MutationEngine(kpi_forest, NodeUpdateGateway(updater))
        before = kpi_forest.to_records()

        outcome = await engine.apply_as_child("revenue", "costs")

        assert outcome.reason is not None
        assert engine.forest.to_records() == before
        assert [node_id for node_id, _ in updater.sent] == ["revenue", "mrr"]


class TestMockGateway:
    """Configurable in-memory gateway."""

    @pytest.mark.asyncio
    async def test_records_calls(self) -> None:
        gateway = MockGateway()
        diff = _diff("a")
        assert (await gateway.persist(diff)).success
        assert gateway.calls == [diff]

    @pytest.mark.asyncio
    async def test_reject(self) -> None:
        result = await MockGateway(reject_with="no").persist(_diff("a"))
        assert result.failure == PersistenceFailure.SERVER_REJECTED

    @pytest.mark.asyncio
    async def test_raise(self) -> None:
        with pytest.raises(OSError):
            await MockGateway(raise_error=OSError("boom")).persist(_diff("a"))
