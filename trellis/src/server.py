"""FastAPI router for Trellis hierarchy editing.

Exposes REST endpoints for forest snapshots, node creation and
deletion, drop previews, and the structural mutation operations.
Designed to be mounted at ``/api/trellis/`` by the parent application.

Snapshot and node lifecycle endpoints are synchronous, so FastAPI runs
their SQLite calls in its thread pool. Mutation endpoints are async
because the engine serializes moves with an asyncio lock.

Each non-empty forest gets one MutationEngine, built lazily from a
storage snapshot and persisting through the storage gateway. Empty
snapshots are never cached. Creating or
deleting nodes happens outside the engine, so the cached engine for
that forest is dropped and rebuilt on the next request.

Example::

    from fastapi import FastAPI
    from trellis.src.server import init_trellis_storage, router

    init_trellis_storage(":memory:")
    app = FastAPI()
    app.include_router(router, prefix="/api/trellis")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from trellis.src.config import EngineConfig
from trellis.src.engine import MutationEngine
from trellis.src.forest import NodeNotFoundError
from trellis.src.models import BlockReason, MutationOutcome, Node, Operation
from trellis.src.storage import TreeStorage, TreeStorageError

logger = logging.getLogger(__name__)

# ===================================================================
# Pydantic request models
# ===================================================================


class NodeCreate(BaseModel):
    """Request body for creating a root node."""

    id: str | None = Field(default=None, min_length=1, max_length=200)
    payload: dict[str, Any] = Field(default_factory=dict)


class DropRequest(BaseModel):
    """Pointer position of a drag over a target row."""

    dragged_id: str = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1)
    x: float
    y: float
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)


class ChildRequest(BaseModel):
    """Request body for nesting a node under a parent."""

    parent_id: str = Field(..., min_length=1)


class SameLevelRequest(BaseModel):
    """Request body for placing a node beside a target."""

    target_id: str = Field(..., min_length=1)
    side: Literal["before", "after"]


# ===================================================================
# Shared state and factory
# ===================================================================

_state: dict[str, Any] = {
    "storage": None,
    "config": None,
    "engines": {},
}


def configure(storage: TreeStorage, config: EngineConfig | None = None) -> None:
    """Inject the storage backend and engine configuration.

    Must be called before the router handles any requests.

    Args:
        storage: Initialized TreeStorage.
        config: Engine configuration shared by every forest.
    """
    _state["storage"] = storage
    _state["config"] = config or EngineConfig()
    _state["engines"] = {}


def init_trellis_storage(
    db_path: str | Path = ":memory:",
    config: EngineConfig | None = None,
) -> TreeStorage:
    """Create the storage backend and configure the router.

    The connection is shared across FastAPI's worker threads.

    Args:
        db_path: Path to SQLite database file, or ':memory:'.
        config: Engine configuration.

    Returns:
        The initialized TreeStorage instance.
    """
    storage = TreeStorage(db_path, check_same_thread=False)
    storage.initialize_schema()
    configure(storage, config)
    return storage


def get_storage() -> TreeStorage:
    """Return the configured TreeStorage, raising 503 if not initialised.

    Raises:
        HTTPException: 503 if storage has not been initialised.
    """
    storage = _state.get("storage")
    if storage is None:
        raise HTTPException(
            status_code=503,
            detail="Trellis storage not initialised. Call configure() first.",
        )
    return storage


def get_engine(forest_id: str) -> MutationEngine:
    """Return the cached engine for *forest_id*, building it if needed.

    A forest without nodes gets a throwaway engine so that unknown IDs
    do not accumulate in the cache.
    """
    engines: dict[str, MutationEngine] = _state["engines"]
    engine = engines.get(forest_id)
    if engine is None:
        storage = get_storage()
        engine = MutationEngine(
            storage.load_forest(forest_id),
            storage.gateway(forest_id),
            _state["config"],
        )
        if len(engine.forest):
            engines[forest_id] = engine
    return engine


def _invalidate(forest_id: str) -> None:
    _state["engines"].pop(forest_id, None)


def _respond(outcome: MutationOutcome) -> dict[str, Any]:
    """Map a mutation outcome to a response body or HTTP error."""
    if outcome.applied or outcome.reason == BlockReason.NO_OP:
        return outcome.to_dict()
    if outcome.reason == BlockReason.PERSISTENCE_ERROR:
        raise HTTPException(status_code=503, detail=outcome.to_dict())
    raise HTTPException(status_code=409, detail=outcome.to_dict())


# ===================================================================
# Router
# ===================================================================

router = APIRouter()


@router.get("/health")
def health() -> dict[str, Any]:
    """Return Trellis service health status."""
    ready = _state.get("storage") is not None
    return {
        "status": "ok" if ready else "not_configured",
        "version": "0.1.0",
        "components": {"storage": ready, "engines": len(_state["engines"])},
    }


# -------------------------------------------------------------------
# Snapshots
# -------------------------------------------------------------------


@router.get("/forests")
def list_forests() -> dict[str, Any]:
    """List forests that contain at least one node."""
    try:
        return {"forests": get_storage().list_forest_ids()}
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to list forests")
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.get("/forests/{forest_id}/nodes")
def list_nodes(forest_id: str) -> dict[str, Any]:
    """All nodes of a forest in display order."""
    try:
        return {"nodes": get_engine(forest_id).forest.to_records()}
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to list nodes of %s", forest_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.get("/forests/{forest_id}/tree")
def get_tree(forest_id: str) -> dict[str, Any]:
    """Nested tree of a forest for display."""
    try:
        return {"tree": get_engine(forest_id).forest.build_tree()}
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to build tree of %s", forest_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.get("/forests/{forest_id}/invariants")
def check_invariants(forest_id: str) -> dict[str, Any]:
    """Report acyclicity and depth violations of a forest."""
    try:
        violations = get_engine(forest_id).forest.check_invariants()
        return {"valid": not violations, "violations": violations}
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to check invariants of %s", forest_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


# -------------------------------------------------------------------
# Node lifecycle
# -------------------------------------------------------------------


@router.post("/forests/{forest_id}/nodes", status_code=201)
def create_node(forest_id: str, request: NodeCreate) -> dict[str, Any]:
    """Create a root node ordered after every existing root."""
    try:
        engine = _state["engines"].get(forest_id)
        if engine is not None and engine.busy:
            raise HTTPException(status_code=409, detail="A move is still being saved")
        storage = get_storage()
        node = storage.add_root(
            forest_id,
            payload=request.payload,
            node_id=request.id,
            root_step=_state["config"].root_step,
        )
        _invalidate(forest_id)
        return node.to_dict()
    except TreeStorageError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to create node in %s", forest_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.delete("/forests/{forest_id}/nodes/{node_id}")
def delete_node(forest_id: str, node_id: str) -> dict[str, Any]:
    """Delete a node; its children move up to take its place."""
    try:
        engine = _state["engines"].get(forest_id)
        if engine is not None and engine.busy:
            raise HTTPException(status_code=409, detail="A move is still being saved")
        if not get_storage().delete_node(forest_id, node_id):
            raise HTTPException(status_code=404, detail="Node not found")
        _invalidate(forest_id)
        return {"deleted": True, "id": node_id}
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to delete node %s", node_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


# -------------------------------------------------------------------
# Gestures and operations
# -------------------------------------------------------------------


@router.post("/forests/{forest_id}/drop/preview")
def preview_drop(forest_id: str, request: DropRequest) -> dict[str, Any]:
    """Show what dropping at the pointer position would do."""
    try:
        preview = get_engine(forest_id).preview_drop(
            request.dragged_id,
            request.target_id,
            request.x,
            request.y,
            request.width,
            request.height,
        )
        return preview.to_dict()
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Drop preview failed in %s", forest_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.post("/forests/{forest_id}/drop")
async def drop(forest_id: str, request: DropRequest) -> dict[str, Any]:
    """Apply a drop gesture."""
    try:
        outcome = await get_engine(forest_id).apply_drop(
            request.dragged_id,
            request.target_id,
            request.x,
            request.y,
            request.width,
            request.height,
        )
        return _respond(outcome)
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Drop failed in %s", forest_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.post("/forests/{forest_id}/nodes/{node_id}/child")
async def move_as_child(forest_id: str, node_id: str, request: ChildRequest) -> dict[str, Any]:
    """Nest a node under a new parent."""
    try:
        outcome = await get_engine(forest_id).apply_as_child(node_id, request.parent_id)
        return _respond(outcome)
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Child move of %s failed", node_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.post("/forests/{forest_id}/nodes/{node_id}/same-level")
async def move_same_level(
    forest_id: str, node_id: str, request: SameLevelRequest
) -> dict[str, Any]:
    """Place a node before or after a target at the target's level."""
    try:
        outcome = await get_engine(forest_id).apply_same_level(
            node_id, request.target_id, Operation(request.side)
        )
        return _respond(outcome)
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Same-level move of %s failed", node_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.post("/forests/{forest_id}/nodes/{node_id}/root")
async def move_to_root(forest_id: str, node_id: str) -> dict[str, Any]:
    """Make a node a root after every existing root."""
    try:
        outcome = await get_engine(forest_id).move_to_root(node_id)
        return _respond(outcome)
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Root move of %s failed", node_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.post("/forests/{forest_id}/nodes/{node_id}/promote")
async def promote(forest_id: str, node_id: str) -> dict[str, Any]:
    """Move a node up one level, right after its parent."""
    try:
        outcome = await get_engine(forest_id).promote(node_id)
        return _respond(outcome)
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Promotion of %s failed", node_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.post("/forests/{forest_id}/nodes/{node_id}/demote")
async def demote(forest_id: str, node_id: str) -> dict[str, Any]:
    """Nest a node under the sibling directly above it."""
    try:
        outcome = await get_engine(forest_id).demote(node_id)
        return _respond(outcome)
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Demotion of %s failed", node_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


def _node_or_404(forest_id: str, node_id: str) -> Node:
    node = get_engine(forest_id).forest.get(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    return node


@router.get("/forests/{forest_id}/nodes/{node_id}")
def get_node(forest_id: str, node_id: str) -> dict[str, Any]:
    """Fetch one node with its children and its ancestor path."""
    try:
        node = _node_or_404(forest_id, node_id)
        forest = get_engine(forest_id).forest
        return {
            **node.to_dict(),
            "children": [c.id for c in forest.children(node_id)],
            "ancestors": forest.ancestors(node_id),
        }
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to get node %s", node_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
