"""Persistence gateway contract and adapters.

The mutation engine hands every validated diff to a gateway exactly
once. A gateway may report failure by returning an unsuccessful
``GatewayResult`` or by raising; either way the engine rolls back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from trellis.src.models import GatewayResult, MutationDiff

logger = logging.getLogger(__name__)

NodeUpdater = Callable[[str, dict[str, Any]], Awaitable[GatewayResult]]


class PersistenceGateway(Protocol):
    """Outbound port used to store structural changes."""

    async def persist(self, diff: MutationDiff) -> GatewayResult:
        """Store the changed fields of *diff*."""
        ...


class NodeUpdateGateway:
    """Adapt a per-node ``update_node(id, fields)`` endpoint.

    Sends only the changed fields of each node, dragged node first,
    and stops at the first failure. Nodes already sent before a failure
    are not undone remotely.

    Args:
        update_node: Coroutine accepting a node ID and its changed fields.
    """

    def __init__(self, update_node: NodeUpdater) -> None:
        self._update_node = update_node

    async def persist(self, diff: MutationDiff) -> GatewayResult:
        """Send each node change in turn."""
        for index, change in enumerate(diff.changes):
            result = await self._update_node(change.node_id, dict(change.fields))
            if not result.success:
                logger.warning(
                    "Update of node %s failed after %d of %d changes: %s",
                    change.node_id,
                    index,
                    len(diff.changes),
                    result.detail,
                )
                return result
        return GatewayResult.ok()


class MockGateway:
    """In-memory gateway for tests and offline use.

    Records every diff it receives. Can be told to reject, raise, or
    delay in order to exercise rollback and timeout paths.

    Args:
        reject_with: Detail string; when set every call is rejected.
        raise_error: Exception raised on every call.
        delay: Seconds to sleep before answering.
    """

    def __init__(
        self,
        reject_with: str | None = None,
        raise_error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.reject_with = reject_with
        self.raise_error = raise_error
        self.delay = delay
        self.calls: list[MutationDiff] = []

    async def persist(self, diff: MutationDiff) -> GatewayResult:
        """Record *diff* and answer as configured."""
        self.calls.append(diff)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_error is not None:
            raise self.raise_error
        if self.reject_with is not None:
            return GatewayResult.rejected(self.reject_with)
        return GatewayResult.ok()
