"""Mutation engine for drag-and-drop tree restructuring.

Owns one forest and exposes the structural operations that may change
it. Every operation follows the same sequence:

1. Validate against the current forest; a block changes nothing.
2. Compute the field diff for the moved node and affected descendants.
3. Apply the diff to the in-memory forest (optimistic).
4. Hand the diff to the persistence gateway, exactly once.
5. Keep the diff on success, or revert it and report PersistenceError.
   A cancelled persist is reverted before the cancellation propagates.

Mutations on one engine run one at a time: a gesture issued while an
earlier one is still being persisted waits for it to settle and is then
validated against the settled forest.

Example::

    engine = MutationEngine(Forest(nodes), gateway)
    outcome = await engine.apply_drop("b", "a", x=180, y=20, width=200, height=40)
    if not outcome.applied:
        show_error(outcome.message)
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from trellis.src.config import CascadeMode, EngineConfig
from trellis.src.forest import Forest
from trellis.src.gateway import PersistenceGateway
from trellis.src.gestures import GestureInterpreter
from trellis.src.models import (
    BlockReason,
    DropPreview,
    GatewayResult,
    MutationDiff,
    MutationOutcome,
    Node,
    NodeChange,
    Operation,
)
from trellis.src.ordering import OrderAllocator
from trellis.src.validation import HierarchyValidator

logger = logging.getLogger(__name__)


class MutationEventKind(str, Enum):
    """Kinds of events delivered to listeners."""

    APPLIED = "applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class MutationEvent:
    """Notification sent to listeners when the forest changes.

    Attributes:
        kind: What happened to the diff.
        diff: The diff that was applied, committed, or reverted.
        outcome: Final outcome; None for APPLIED events.
    """

    kind: MutationEventKind
    diff: MutationDiff
    outcome: MutationOutcome | None = None


Listener = Callable[[MutationEvent], None]


class MutationEngine:
    """Session object owning a forest and its structural operations.

    Args:
        forest: The forest to mutate. The engine becomes its only writer.
        gateway: Where validated diffs are persisted.
        config: Engine configuration. Uses defaults when None.
        validator: Rule-table validator. Uses the default table when None.
    """

    def __init__(
        self,
        forest: Forest,
        gateway: PersistenceGateway,
        config: EngineConfig | None = None,
        validator: HierarchyValidator | None = None,
    ) -> None:
        self._forest = forest
        self._gateway = gateway
        self._config = config or EngineConfig()
        self._validator = validator or HierarchyValidator()
        self._interpreter = GestureInterpreter(self._config)
        self._allocator = OrderAllocator(self._config.order_gap, self._config.root_step)
        self._lock = asyncio.Lock()
        self._listeners: list[Listener] = []

    @classmethod
    def from_nodes(
        cls,
        nodes: list[Node],
        gateway: PersistenceGateway,
        config: EngineConfig | None = None,
    ) -> MutationEngine:
        """Build an engine from a snapshot provider's node list."""
        return cls(Forest(n.copy() for n in nodes), gateway, config)

    @property
    def forest(self) -> Forest:
        """The owned forest. Read it; never write it directly."""
        return self._forest

    @property
    def config(self) -> EngineConfig:
        """Active configuration."""
        return self._config

    @property
    def busy(self) -> bool:
        """True while a mutation is being persisted."""
        return self._lock.locked()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for mutation events.

        Returns:
            Callable that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---------------------------------------------------------------
    # Gestures
    # ---------------------------------------------------------------

    def preview_drop(
        self,
        dragged_id: str,
        target_id: str,
        x: float,
        y: float,
        width: float,
        height: float,
    ) -> DropPreview:
        """Interpret and validate a hover without changing anything."""
        operation = self._interpreter.interpret(dragged_id, target_id, x, y, width, height)
        verdict = self._validator.validate(self._forest, dragged_id, target_id, operation)
        return DropPreview(
            target_id=target_id,
            operation=operation,
            allowed=verdict.allowed,
            reason=verdict.reason,
        )

    async def apply_drop(
        self,
        dragged_id: str,
        target_id: str,
        x: float,
        y: float,
        width: float,
        height: float,
    ) -> MutationOutcome:
        """Interpret a drop and apply the resulting operation."""
        operation = self._interpreter.interpret(dragged_id, target_id, x, y, width, height)
        return await self._run(operation, dragged_id, target_id)

    # ---------------------------------------------------------------
    # Operations
    # ---------------------------------------------------------------

    async def apply_as_child(self, dragged_id: str, parent_id: str) -> MutationOutcome:
        """Nest *dragged_id* under *parent_id*."""
        return await self._run(Operation.CHILD, dragged_id, parent_id)

    async def apply_same_level(
        self, dragged_id: str, target_id: str, side: Operation
    ) -> MutationOutcome:
        """Place *dragged_id* directly before or after *target_id*.

        Raises:
            ValueError: If *side* is not BEFORE or AFTER.
        """
        if side not in (Operation.BEFORE, Operation.AFTER):
            raise ValueError(f"Side must be before or after, got {side.value}")
        return await self._run(side, dragged_id, target_id)

    async def move_to_root(self, dragged_id: str) -> MutationOutcome:
        """Make *dragged_id* a root ordered after all existing roots."""
        return await self._run(Operation.ROOT, dragged_id, None)

    async def promote(self, node_id: str) -> MutationOutcome:
        """Move *node_id* up one level, directly after its current parent."""
        async with self._lock:
            node = self._forest.require(node_id)
            if node.is_root or node.parent_id not in self._forest:
                return MutationOutcome.blocked(BlockReason.NO_OP, Operation.NO_OP)
            return await self._run_locked(Operation.AFTER, node_id, node.parent_id)

    async def demote(self, node_id: str) -> MutationOutcome:
        """Nest *node_id* under the sibling directly above it.

        The first sibling has nothing to nest under and yields a NoOp.
        """
        async with self._lock:
            node = self._forest.require(node_id)
            siblings = self._forest.children(node.parent_id)
            index = next(i for i, n in enumerate(siblings) if n.id == node.id)
            if index == 0:
                return MutationOutcome.blocked(BlockReason.NO_OP, Operation.NO_OP)
            return await self._run_locked(Operation.CHILD, node_id, siblings[index - 1].id)

    # ---------------------------------------------------------------
    # Pipeline
    # ---------------------------------------------------------------

    async def _run(
        self, operation: Operation, dragged_id: str, target_id: str | None
    ) -> MutationOutcome:
        async with self._lock:
            return await self._run_locked(operation, dragged_id, target_id)

    async def _run_locked(
        self, operation: Operation, dragged_id: str, target_id: str | None
    ) -> MutationOutcome:
        verdict = self._validator.validate(self._forest, dragged_id, target_id, operation)
        if not verdict.allowed:
            logger.warning(
                "Blocked %s of %s onto %s: %s (%s)",
                operation.value,
                dragged_id,
                target_id,
                verdict.reason.value if verdict.reason else None,
                verdict.rule,
            )
            return MutationOutcome.blocked(verdict.reason, operation)  # type: ignore[arg-type]

        diff = self._plan(operation, dragged_id, target_id)
        self._forest.apply(diff)
        self._notify(MutationEvent(MutationEventKind.APPLIED, diff))

        try:
            result = await self._persist(diff)
        except asyncio.CancelledError:
            self._forest.revert(diff)
            outcome = MutationOutcome.persistence_error(
                diff, GatewayResult.unreachable("Persistence was cancelled")
            )
            logger.warning("Rolled back %s of %s: cancelled", operation.value, dragged_id)
            self._notify(MutationEvent(MutationEventKind.ROLLED_BACK, diff, outcome))
            raise

        if result.success:
            outcome = MutationOutcome.committed(diff)
            logger.info(
                "Committed %s of %s onto %s (%d node(s) changed)",
                operation.value,
                dragged_id,
                target_id,
                len(diff.changes),
            )
            self._notify(MutationEvent(MutationEventKind.COMMITTED, diff, outcome))
            return outcome

        self._forest.revert(diff)
        outcome = MutationOutcome.persistence_error(diff, result)
        logger.warning(
            "Rolled back %s of %s: %s (%s)",
            operation.value,
            dragged_id,
            result.failure.value if result.failure else None,
            result.detail,
        )
        self._notify(MutationEvent(MutationEventKind.ROLLED_BACK, diff, outcome))
        return outcome

    async def _persist(self, diff: MutationDiff) -> GatewayResult:
        """Send *diff* to the gateway, mapping raised errors to failures."""
        timeout = self._config.gateway_timeout
        try:
            if timeout is None:
                return await self._gateway.persist(diff)
            return await asyncio.wait_for(self._gateway.persist(diff), timeout)
        except asyncio.TimeoutError:
            return GatewayResult.unreachable(f"Gateway timed out after {timeout}s")
        except Exception as exc:
            logger.warning("Gateway raised %s: %s", type(exc).__name__, exc)
            return GatewayResult.unreachable(str(exc) or type(exc).__name__)

    def _notify(self, event: MutationEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Mutation listener failed on %s event", event.kind)

    # ---------------------------------------------------------------
    # Diff computation
    # ---------------------------------------------------------------

    def _plan(
        self, operation: Operation, dragged_id: str, target_id: str | None
    ) -> MutationDiff:
        dragged = self._forest.require(dragged_id)
        if operation == Operation.CHILD:
            parent = self._forest.require(target_id)  # type: ignore[arg-type]
            fields = {
                "parent_id": parent.id,
                "level": parent.level + 1,
                "order": self._allocator.for_child(parent),
            }
        elif operation == Operation.ROOT:
            orders = [n.order for n in self._forest.roots() if n.id != dragged.id]
            fields = {
                "parent_id": None,
                "level": 0,
                "order": self._allocator.after_all(orders),
            }
        else:
            target = self._forest.require(target_id)  # type: ignore[arg-type]
            fields = {
                "parent_id": target.parent_id,
                "level": target.level,
                "order": self._allocator.beside(target, operation),
            }
            if target.parent_id is None:
                fields["parent_id"] = None
                fields["level"] = 0

        diff = MutationDiff(operation=operation, dragged_id=dragged.id, target_id=target_id)
        change = _change(dragged, fields)
        if change is not None:
            diff.changes.append(change)
        diff.changes.extend(self._cascade(dragged, fields["level"], operation))
        return diff

    def _cascade(self, dragged: Node, new_level: int, operation: Operation) -> list[NodeChange]:
        """Level changes for nodes below *dragged*."""
        if self._config.cascade == CascadeMode.SHALLOW:
            if operation != Operation.CHILD:
                return []
            changes = (
                _change(child, {"level": new_level + 1})
                for child in self._forest.children(dragged.id)
            )
            return [c for c in changes if c is not None]

        changes: list[NodeChange] = []
        visited = {dragged.id}
        queue = deque([(dragged.id, new_level)])
        while queue:
            node_id, level = queue.popleft()
            for child in self._forest.children(node_id):
                if child.id in visited:
                    continue
                visited.add(child.id)
                change = _change(child, {"level": level + 1})
                if change is not None:
                    changes.append(change)
                queue.append((child.id, level + 1))
        return changes


def _change(node: Node, fields: dict[str, Any]) -> NodeChange | None:
    """NodeChange holding only the fields whose value differs."""
    changed = {k: v for k, v in fields.items() if getattr(node, k) != v}
    if not changed:
        return None
    return NodeChange(
        node_id=node.id,
        fields=changed,
        previous={k: getattr(node, k) for k in changed},
    )
