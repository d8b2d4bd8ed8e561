"""Trellis data models for hierarchical tree reordering.

Defines the node record shared by every hierarchy (KPIs, records),
the candidate operations produced by drag gestures, field-level
diffs, gateway results, and the discriminated outcome returned to
callers. All models use dataclasses with serialization support.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Fields the engine is allowed to change on a node.
STRUCTURAL_FIELDS = ("parent_id", "level", "order")


class Operation(str, Enum):
    """Structural operation proposed by a gesture or requested directly."""

    BEFORE = "before"
    AFTER = "after"
    CHILD = "child"
    ROOT = "root"
    NO_OP = "noop"


class BlockReason(str, Enum):
    """Why a mutation was not applied."""

    CYCLE_DETECTED = "CycleDetected"
    INVALID_DEMOTION = "InvalidDemotion"
    PERSISTENCE_ERROR = "PersistenceError"
    NO_OP = "NoOp"


class PersistenceFailure(str, Enum):
    """Kind of persistence failure reported after an optimistic apply."""

    NETWORK_FAILURE = "NetworkFailure"
    SERVER_REJECTED = "ServerRejected"


_REASON_MESSAGES: dict[BlockReason, str] = {
    BlockReason.CYCLE_DETECTED: (
        "This move would place an item inside its own subtree. "
        "Choose a target outside the dragged item's branch."
    ),
    BlockReason.INVALID_DEMOTION: (
        "A top-level item cannot be moved to the same level as a child. "
        "Only children can be promoted to the top level."
    ),
    BlockReason.PERSISTENCE_ERROR: (
        "The change could not be saved and has been undone. Please try again."
    ),
    BlockReason.NO_OP: "Nothing to move.",
}


@dataclass
class Node:
    """One item participating in a hierarchy.

    Attributes:
        id: Unique identifier (prefixed with 'node_' when generated).
        parent_id: ID of the parent node, or None for a root. A lookup
            key into the forest, never an owning reference.
        level: Depth in the tree (0 for roots).
        order: Sibling ordering key; only relative order matters.
        payload: Feature-owned data carried along untouched.
    """

    id: str
    parent_id: str | None = None
    level: int = 0
    order: float = 0.0
    payload: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def generate_id() -> str:
        """Generate a unique node ID."""
        return f"node_{uuid.uuid4().hex[:12]}"

    @property
    def is_root(self) -> bool:
        """True when the node has no parent."""
        return self.parent_id is None

    @property
    def sort_key(self) -> tuple[float, str]:
        """Key ordering siblings by order, ties broken by id."""
        return (self.order, self.id)

    def copy(self) -> Node:
        """Return an independent copy (payload is shallow-copied)."""
        return Node(
            id=self.id,
            parent_id=self.parent_id,
            level=self.level,
            order=self.order,
            payload=dict(self.payload),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "level": self.level,
            "order": self.order,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            parent_id=data.get("parent_id"),
            level=int(data.get("level", 0)),
            order=float(data.get("order", 0.0)),
            payload=data.get("payload", {}) or {},
        )


@dataclass
class NodeChange:
    """Changed structural fields of a single node.

    Attributes:
        node_id: ID of the changed node.
        fields: New values, restricted to fields that actually change.
        previous: Prior values of exactly the keys in ``fields``.
    """

    node_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    previous: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "node_id": self.node_id,
            "fields": dict(self.fields),
            "previous": dict(self.previous),
        }


@dataclass
class MutationDiff:
    """All field changes produced by one mutation.

    Attributes:
        operation: The operation that produced the diff.
        dragged_id: ID of the node being moved.
        target_id: Target (or new parent) ID, None for root moves.
        changes: Per-node changes, dragged node first.
    """

    operation: Operation
    dragged_id: str
    target_id: str | None = None
    changes: list[NodeChange] = field(default_factory=list)

    @property
    def changed_ids(self) -> list[str]:
        """IDs of every node touched by the diff."""
        return [c.node_id for c in self.changes]

    @property
    def is_empty(self) -> bool:
        """True when no field changes."""
        return not self.changes

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "operation": self.operation.value,
            "dragged_id": self.dragged_id,
            "target_id": self.target_id,
            "changes": [c.to_dict() for c in self.changes],
        }


@dataclass
class GatewayResult:
    """Outcome of a persistence request.

    Attributes:
        success: True when the store accepted the diff.
        detail: Human-readable failure detail.
        failure: Failure kind; defaults to SERVER_REJECTED on failure.
    """

    success: bool
    detail: str = ""
    failure: PersistenceFailure | None = None

    def __post_init__(self) -> None:
        if not self.success and self.failure is None:
            self.failure = PersistenceFailure.SERVER_REJECTED

    @classmethod
    def ok(cls) -> GatewayResult:
        """A successful result."""
        return cls(success=True)

    @classmethod
    def rejected(cls, detail: str) -> GatewayResult:
        """The store refused the change."""
        return cls(success=False, detail=detail, failure=PersistenceFailure.SERVER_REJECTED)

    @classmethod
    def unreachable(cls, detail: str) -> GatewayResult:
        """The store could not be reached."""
        return cls(success=False, detail=detail, failure=PersistenceFailure.NETWORK_FAILURE)


@dataclass
class DropPreview:
    """What the UI should show while hovering a target row.

    Attributes:
        target_id: Row under the pointer.
        operation: Candidate operation from the gesture zones.
        allowed: Whether dropping here would be accepted.
        reason: Block reason when not allowed.
    """

    target_id: str
    operation: Operation
    allowed: bool
    reason: BlockReason | None = None

    @property
    def position(self) -> str:
        """Row indicator: before, after, child, or blocked."""
        if not self.allowed:
            return "blocked"
        return self.operation.value

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "target_id": self.target_id,
            "operation": self.operation.value,
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "position": self.position,
        }


@dataclass
class MutationOutcome:
    """Discriminated result of a mutation request.

    Attributes:
        applied: True when the mutation was committed.
        changed_ids: Nodes whose fields changed (applied only).
        reason: Why the mutation was not applied.
        detail: Failure detail for persistence errors.
        failure: Persistence failure kind.
        operation: The operation that was attempted.
    """

    applied: bool
    changed_ids: list[str] = field(default_factory=list)
    reason: BlockReason | None = None
    detail: str = ""
    failure: PersistenceFailure | None = None
    operation: Operation | None = None

    @classmethod
    def committed(cls, diff: MutationDiff) -> MutationOutcome:
        """Outcome for a persisted diff."""
        return cls(applied=True, changed_ids=diff.changed_ids, operation=diff.operation)

    @classmethod
    def blocked(cls, reason: BlockReason, operation: Operation | None = None) -> MutationOutcome:
        """Outcome for a mutation refused before any state change."""
        return cls(applied=False, reason=reason, operation=operation)

    @classmethod
    def persistence_error(cls, diff: MutationDiff, result: GatewayResult) -> MutationOutcome:
        """Outcome for a rolled-back diff."""
        return cls(
            applied=False,
            reason=BlockReason.PERSISTENCE_ERROR,
            detail=result.detail,
            failure=result.failure,
            operation=diff.operation,
        )

    @property
    def retryable(self) -> bool:
        """True when the same gesture may simply be retried."""
        return self.reason == BlockReason.PERSISTENCE_ERROR

    @property
    def message(self) -> str:
        """User-facing summary of the outcome."""
        if self.applied:
            return f"Moved {len(self.changed_ids)} item(s)."
        if self.reason is None:
            return ""
        return _REASON_MESSAGES[self.reason]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the caller-facing discriminated shape."""
        if self.applied:
            return {"applied": True, "changed_ids": list(self.changed_ids)}
        data: dict[str, Any] = {
            "applied": False,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
        }
        if self.reason == BlockReason.PERSISTENCE_ERROR:
            data["detail"] = self.detail
            data["failure"] = self.failure.value if self.failure else None
            data["retryable"] = True
        return data
