"""Shared fixtures for Trellis tests."""

from __future__ import annotations

import pytest

from trellis.src.config import EngineConfig
from trellis.src.engine import MutationEngine
from trellis.src.forest import Forest
from trellis.src.gateway import MockGateway
from trellis.src.models import Node
from trellis.src.storage import TreeStorage


def kpi_nodes() -> list[Node]:
    """Three roots, two children under the first, one grandchild.

    Layout::

        revenue (1)
            mrr (1)
                mrr_eu (1)
            churn (2)
        costs (2)
        headcount (3)
    """
    return [
        Node(id="revenue", order=1.0, payload={"kpi": "Revenue"}),
        Node(id="costs", order=2.0, payload={"kpi": "Costs"}),
        Node(id="headcount", order=3.0, payload={"kpi": "Headcount"}),
        Node(id="mrr", parent_id="revenue", level=1, order=1.0, payload={"kpi": "MRR"}),
        Node(id="churn", parent_id="revenue", level=1, order=2.0, payload={"kpi": "Churn"}),
        Node(id="mrr_eu", parent_id="mrr", level=2, order=1.0, payload={"kpi": "MRR EU"}),
    ]


@pytest.fixture
def kpi_forest() -> Forest:
    """Forest built from kpi_nodes()."""
    return Forest(kpi_nodes())


@pytest.fixture
def two_roots() -> Forest:
    """A(root, order=1), B(root, order=2)."""
    return Forest([Node(id="A", order=1.0), Node(id="B", order=2.0)])


@pytest.fixture
def parent_child() -> Forest:
    """A(root) with child B."""
    return Forest([Node(id="A", order=1.0), Node(id="B", parent_id="A", level=1, order=1.0)])


@pytest.fixture
def chain() -> Forest:
    """A -> B -> C."""
    return Forest(
        [
            Node(id="A", order=1.0),
            Node(id="B", parent_id="A", level=1, order=1.0),
            Node(id="C", parent_id="B", level=2, order=1.0),
        ]
    )


@pytest.fixture
def gateway() -> MockGateway:
    """Gateway accepting every diff."""
    return MockGateway()


@pytest.fixture
def kpi_engine(kpi_forest: Forest, gateway: MockGateway) -> MutationEngine:
    """Engine over kpi_forest with the accepting gateway."""
    return MutationEngine(kpi_forest, gateway, EngineConfig())


@pytest.fixture
def memory_store() -> TreeStorage:
    """In-memory TreeStorage with schema initialized."""
    store = TreeStorage(":memory:")
    store.initialize_schema()
    return store


@pytest.fixture
def populated_store(memory_store: TreeStorage) -> TreeStorage:
    """Memory store holding kpi_nodes() in forest 'kpis'."""
    for node in kpi_nodes():
        memory_store.create_node("kpis", node)
    return memory_store
