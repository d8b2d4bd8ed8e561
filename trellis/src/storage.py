"""SQLite-backed storage for hierarchy nodes.

Plays the owning feature's part around the mutation engine: creates and
deletes nodes, serves forest snapshots, and persists engine diffs in a
single transaction per mutation.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from trellis.src.forest import Forest
from trellis.src.models import STRUCTURAL_FIELDS, GatewayResult, MutationDiff, Node
from trellis.src.ordering import OrderAllocator

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS nodes (
    forest_id TEXT NOT NULL,
    id TEXT NOT NULL,
    parent_id TEXT,
    level INTEGER NOT NULL DEFAULT 0,
    order_key REAL NOT NULL DEFAULT 0,
    payload_json TEXT DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (forest_id, id)
);

CREATE INDEX IF NOT EXISTS idx_nodes_forest
    ON nodes(forest_id);
CREATE INDEX IF NOT EXISTS idx_nodes_parent
    ON nodes(forest_id, parent_id);
"""

_COLUMNS = {"parent_id": "parent_id", "level": "level", "order": "order_key"}


class TreeStorageError(Exception):
    """Raised for storage-level errors (duplicates, not found, etc.)."""


class TreeStorage:
    """SQLite-backed storage for hierarchy nodes.

    Args:
        db_path: Path to SQLite database file, or ':memory:' for in-memory.
        check_same_thread: Passed to sqlite3; disable when the connection
            is shared with a server's worker threads.

    Example::

        with TreeStorage("trellis.db") as store:
            store.initialize_schema()
            node = store.add_root("kpis", {"title": "Revenue"})
    """

    def __init__(self, db_path: str | Path = ":memory:", check_same_thread: bool = True) -> None:
        self._db_path = str(db_path)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=check_same_thread)
        self._conn.row_factory = sqlite3.Row

    def __enter__(self) -> TreeStorage:
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Close the database connection."""
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.commit()

    # ---------------------------------------------------------------
    # Nodes
    # ---------------------------------------------------------------

    def create_node(self, forest_id: str, node: Node) -> Node:
        """Insert a node as given.

        Args:
            forest_id: Hierarchy the node belongs to.
            node: Node to insert.

        Returns:
            The inserted node.

        Raises:
            TreeStorageError: If a node with the same ID exists in the forest.
        """
        now = datetime.now().isoformat()
        try:
            self._conn.execute(
                "INSERT INTO nodes (forest_id, id, parent_id, level, order_key, "
                "payload_json, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    forest_id,
                    node.id,
                    node.parent_id,
                    node.level,
                    node.order,
                    json.dumps(node.payload),
                    now,
                    now,
                ),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as exc:
            raise TreeStorageError(f"Node already exists: {node.id}") from exc
        return node

    def add_root(
        self,
        forest_id: str,
        payload: dict[str, Any] | None = None,
        node_id: str | None = None,
        root_step: float = 1.0,
    ) -> Node:
        """Create a new root ordered after every existing root.

        Args:
            forest_id: Hierarchy to add to.
            payload: Feature data for the node.
            node_id: Explicit ID; generated when None.
            root_step: Spacing after the last root's order key.

        Returns:
            The created node.
        """
        row = self._conn.execute(
            "SELECT MAX(order_key) AS last FROM nodes WHERE forest_id = ? AND parent_id IS NULL",
            (forest_id,),
        ).fetchone()
        orders = [] if row["last"] is None else [row["last"]]
        node = Node(
            id=node_id or Node.generate_id(),
            parent_id=None,
            level=0,
            order=OrderAllocator(root_step=root_step).after_all(orders),
            payload=payload or {},
        )
        return self.create_node(forest_id, node)

    def get_node(self, forest_id: str, node_id: str) -> Node | None:
        """Fetch a node by ID.

        Returns:
            Node or None if not found.
        """
        row = self._conn.execute(
            "SELECT * FROM nodes WHERE forest_id = ? AND id = ?", (forest_id, node_id)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_node(row)

    def list_nodes(self, forest_id: str) -> list[Node]:
        """All nodes of a forest, ordered by level then order key."""
        rows = self._conn.execute(
            "SELECT * FROM nodes WHERE forest_id = ? ORDER BY level, order_key, id",
            (forest_id,),
        ).fetchall()
        return [self._row_to_node(r) for r in rows]

    def load_forest(self, forest_id: str) -> Forest:
        """Snapshot of a forest as an in-memory Forest."""
        return Forest(self.list_nodes(forest_id))

    def list_forest_ids(self) -> list[str]:
        """IDs of every forest with at least one node."""
        rows = self._conn.execute(
            "SELECT DISTINCT forest_id FROM nodes ORDER BY forest_id"
        ).fetchall()
        return [r["forest_id"] for r in rows]

    def apply_diff(self, forest_id: str, diff: MutationDiff) -> None:
        """Write every change of *diff* in one transaction.

        Raises:
            TreeStorageError: If any change fails; nothing is written then.
        """
        try:
            for change in diff.changes:
                self._write_fields(forest_id, change.node_id, change.fields)
        except (TreeStorageError, sqlite3.Error) as exc:
            self._conn.rollback()
            if isinstance(exc, TreeStorageError):
                raise
            raise TreeStorageError(f"Failed to store diff: {exc}") from exc
        self._conn.commit()

    def delete_node(self, forest_id: str, node_id: str) -> bool:
        """Delete a node, handing its children to its parent.

        Children take the deleted node's place; every node of the
        removed subtree moves up one level.

        Returns:
            True if the node existed and was deleted.

        Raises:
            TreeStorageError: If a write fails; nothing is changed then.
        """
        forest = self.load_forest(forest_id)
        node = forest.get(node_id)
        if node is None:
            return False
        now = datetime.now().isoformat()
        try:
            for descendant in forest.descendants(node_id):
                parent_id = descendant.parent_id
                if parent_id == node_id:
                    parent_id = node.parent_id
                self._conn.execute(
                    "UPDATE nodes SET parent_id = ?, level = ?, updated_at = ? "
                    "WHERE forest_id = ? AND id = ?",
                    (parent_id, max(0, descendant.level - 1), now, forest_id, descendant.id),
                )
            self._conn.execute(
                "DELETE FROM nodes WHERE forest_id = ? AND id = ?", (forest_id, node_id)
            )
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise TreeStorageError(f"Failed to delete node {node_id}: {exc}") from exc
        self._conn.commit()
        return True

    def gateway(self, forest_id: str) -> StorageGateway:
        """Persistence gateway writing diffs into *forest_id*."""
        return StorageGateway(self, forest_id)

    # ---------------------------------------------------------------
    # Private helpers
    # ---------------------------------------------------------------

    def _write_fields(self, forest_id: str, node_id: str, fields: dict[str, Any]) -> None:
        unknown = [name for name in fields if name not in STRUCTURAL_FIELDS]
        if unknown:
            raise TreeStorageError(f"Fields are not structural: {', '.join(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{_COLUMNS[name]} = ?" for name in fields)
        params = [*fields.values(), datetime.now().isoformat(), forest_id, node_id]
        cursor = self._conn.execute(
            f"UPDATE nodes SET {assignments}, updated_at = ? WHERE forest_id = ? AND id = ?",
            params,
        )
        if cursor.rowcount == 0:
            raise TreeStorageError(f"Node not found: {node_id}")

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> Node:
        return Node.from_dict(
            {
                "id": row["id"],
                "parent_id": row["parent_id"],
                "level": row["level"],
                "order": row["order_key"],
                "payload": json.loads(row["payload_json"] or "{}"),
            }
        )


class StorageGateway:
    """Persistence gateway backed by TreeStorage.

    Args:
        storage: Store to write into.
        forest_id: Forest the engine operates on.
    """

    def __init__(self, storage: TreeStorage, forest_id: str) -> None:
        self._storage = storage
        self._forest_id = forest_id

    async def persist(self, diff: MutationDiff) -> GatewayResult:
        """Apply *diff* transactionally; storage errors become rejections."""
        if diff.is_empty:
            return GatewayResult.ok()
        try:
            self._storage.apply_diff(self._forest_id, diff)
        except TreeStorageError as exc:
            return GatewayResult.rejected(str(exc))
        return GatewayResult.ok()
