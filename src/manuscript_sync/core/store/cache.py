"""SQLite-backed cache store for projects and document nodes."""

import json
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from loguru import logger

from manuscript_sync.core.database.schema import migrate_schema
from manuscript_sync.errors import NotFoundError
from manuscript_sync.models.node import (
    DocumentKind,
    DocumentNode,
    DocumentStatus,
    Project,
    SyncStatus,
)

_NODE_COLUMNS = (
    "id, project_id, parent_id, kind, title, sort_order, created, updated, last_edited, "
    "synopsis, tags, status, include_in_compile, word_count, content, external_id"
)

_PROJECT_COLUMNS = (
    "id, name, owner_id, root_folder_id, description, created, sync_status, "
    "last_sync_at, sync_error"
)

# DocumentNode attribute -> column name, for partial updates.
_UPDATABLE_FIELDS = {
    "parent_id": "parent_id",
    "kind": "kind",
    "title": "title",
    "order": "sort_order",
    "updated": "updated",
    "last_edited": "last_edited",
    "synopsis": "synopsis",
    "tags": "tags",
    "status": "status",
    "include_in_compile": "include_in_compile",
    "word_count": "word_count",
    "content": "content",
    "external_id": "external_id",
}


def _row_to_node(row: tuple) -> DocumentNode:
    return DocumentNode(
        id=row[0],
        project_id=row[1],
        parent_id=row[2],
        kind=DocumentKind(row[3]),
        title=row[4],
        order=row[5],
        created=row[6],
        updated=row[7],
        last_edited=row[8],
        synopsis=row[9],
        tags=tuple(json.loads(row[10])),
        status=DocumentStatus(row[11]),
        include_in_compile=bool(row[12]),
        word_count=row[13],
        content=row[14],
        external_id=row[15],
    )


def _row_to_project(row: tuple) -> Project:
    return Project(
        id=row[0],
        name=row[1],
        owner_id=row[2],
        root_folder_id=row[3],
        description=row[4],
        created=row[5],
        sync_status=SyncStatus(row[6]),
        last_sync_at=row[7],
        sync_error=row[8],
    )


def _node_values(node: DocumentNode) -> tuple:
    return (
        node.id, node.project_id, node.parent_id, str(node.kind), node.title,
        node.order, node.created, node.updated, node.last_edited, node.synopsis,
        json.dumps(list(node.tags)), str(node.status), int(node.include_in_compile),
        node.word_count, node.content, node.external_id,
    )


def _to_column_value(name: str, value: Any) -> Any:
    if name == "tags":
        return json.dumps(list(value))
    if name in ("kind", "status"):
        return str(value)
    if name == "include_in_compile":
        return int(bool(value))
    return value


class NodeLocks:
    """Hands out one lock per node id so writes to the same node are serialized."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _get(self, node_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(node_id)
            if lock is None:
                lock = self._locks[node_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, *node_ids: str | None) -> Iterator[None]:
        """Acquire the locks of all given ids, in sorted order to avoid deadlocks."""
        ids = sorted({n for n in node_ids if n is not None})
        locks = [self._get(n) for n in ids]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()


class CacheStore:
    """Fast local copy of projects and document nodes.

    All statements go through one sqlite connection guarded by a lock, so the store
    can be shared between request threads and mirror workers.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._lock = threading.RLock()
        self.node_locks = NodeLocks()

    @classmethod
    def open(cls, db_path: Path | str) -> "CacheStore":
        """Open (creating if needed) the cache database at db_path."""
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        migrate_schema(conn)
        logger.debug("Cache store opened at {}", db_path)
        return cls(conn)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several statements atomically; commit on success, roll back on error."""
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    # --- Projects ---

    def insert_project(self, project: Project) -> Project:
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO projects ({_PROJECT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    project.id, project.name, project.owner_id, project.root_folder_id,
                    project.description, project.created, str(project.sync_status),
                    project.last_sync_at, project.sync_error,
                ),
            )
        return project

    def find_project(self, project_id: str) -> Project | None:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE id = ? OR root_folder_id = ?",
                (project_id, project_id),
            ).fetchone()
        return _row_to_project(row) if row else None

    def get_project(self, project_id: str) -> Project:
        """Return the project by id or root folder ref, raising NotFoundError."""
        project = self.find_project(project_id)
        if project is None:
            msg = f"Project '{project_id}' not found."
            raise NotFoundError(msg)
        return project

    def list_projects(self, owner_id: str | None = None) -> list[Project]:
        query = f"SELECT {_PROJECT_COLUMNS} FROM projects"
        params: tuple[str, ...] = ()
        if owner_id is not None:
            query += " WHERE owner_id = ?"
            params = (owner_id,)
        with self._lock:
            rows = self.conn.execute(query + " ORDER BY name", params).fetchall()
        return [_row_to_project(r) for r in rows]

    def set_sync_status(
        self,
        project_id: str,
        status: SyncStatus,
        *,
        last_sync_at: int | None = None,
        error: str | None = None,
    ) -> None:
        """Set sync status. last_sync_at is only written when given."""
        with self.transaction() as conn:
            if last_sync_at is None:
                conn.execute(
                    "UPDATE projects SET sync_status = ?, sync_error = ? WHERE id = ?",
                    (str(status), error, project_id),
                )
            else:
                conn.execute(
                    "UPDATE projects SET sync_status = ?, sync_error = ?, last_sync_at = ? "
                    "WHERE id = ?",
                    (str(status), error, last_sync_at, project_id),
                )

    def delete_project(self, project_id: str) -> int:
        """Delete a project and all its nodes. Returns the number of nodes removed."""
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM documents WHERE project_id = ?", (project_id,))
            conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        return cur.rowcount

    # --- Nodes ---

    def get_node(self, node_id: str) -> DocumentNode | None:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM documents WHERE id = ?", (node_id,)
            ).fetchone()
        return _row_to_node(row) if row else None

    def resolve_node(self, ref: str) -> DocumentNode:
        """Resolve a cache id or an external store ref to the node, raising NotFoundError."""
        with self._lock:
            row = self.conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM documents WHERE id = ? OR external_id = ? "
                "ORDER BY id = ? DESC LIMIT 1",
                (ref, ref, ref),
            ).fetchone()
        if row is None:
            msg = f"Document '{ref}' not found."
            raise NotFoundError(msg)
        return _row_to_node(row)

    def find_by_external_id(self, project_id: str, external_id: str) -> DocumentNode | None:
        with self._lock:
            row = self.conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM documents WHERE project_id = ? AND external_id = ?",
                (project_id, external_id),
            ).fetchone()
        return _row_to_node(row) if row else None

    def list_nodes(self, project_id: str) -> list[DocumentNode]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM documents WHERE project_id = ? "
                "ORDER BY sort_order, created, id",
                (project_id,),
            ).fetchall()
        return [_row_to_node(r) for r in rows]

    def list_all_nodes(self) -> list[DocumentNode]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM documents ORDER BY project_id, sort_order, created"
            ).fetchall()
        return [_row_to_node(r) for r in rows]

    def find_children(self, parent_id: str) -> list[DocumentNode]:
        """Direct children of a node, ordered by sort order then creation time."""
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {_NODE_COLUMNS} FROM documents WHERE parent_id = ? "
                "ORDER BY sort_order, created, id",
                (parent_id,),
            ).fetchall()
        return [_row_to_node(r) for r in rows]

    def count_siblings(self, project_id: str, parent_id: str | None) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM documents WHERE project_id = ? AND parent_id IS ?",
                (project_id, parent_id),
            ).fetchone()
        return int(row[0])

    def insert_node(self, node: DocumentNode) -> DocumentNode:
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO documents ({_NODE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _node_values(node),
            )
        return node

    def insert_node_if_parent_exists(self, node: DocumentNode) -> bool:
        """Insert node only if its parent row still exists (always for root level).

        The existence check and the insert are one statement, so a parent deleted
        concurrently can never leave the new row dangling. Returns False when nothing
        was inserted.
        """
        with self.transaction() as conn:
            cur = conn.execute(
                f"INSERT INTO documents ({_NODE_COLUMNS}) "
                "SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ? "
                "WHERE ? IS NULL OR EXISTS (SELECT 1 FROM documents WHERE id = ?)",
                (*_node_values(node), node.parent_id, node.parent_id),
            )
        return cur.rowcount == 1

    def update_node(self, node_id: str, **fields: Any) -> DocumentNode:
        """Update the given attributes of a node and return the stored result."""
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            msg = f"Cannot update fields: {sorted(unknown)!r}"
            raise ValueError(msg)
        if fields:
            assignments = ", ".join(f"{_UPDATABLE_FIELDS[k]} = ?" for k in fields)
            values = [_to_column_value(k, v) for k, v in fields.items()]
            with self.transaction() as conn:
                cur = conn.execute(
                    f"UPDATE documents SET {assignments} WHERE id = ?", [*values, node_id]
                )
            if cur.rowcount == 0:
                msg = f"Document '{node_id}' not found."
                raise NotFoundError(msg)
        node = self.get_node(node_id)
        if node is None:
            msg = f"Document '{node_id}' not found."
            raise NotFoundError(msg)
        return node

    def update_parent_if_matches(
        self,
        node_id: str,
        *,
        expected_parent_id: str | None,
        new_parent_id: str | None,
        updated: int,
    ) -> bool:
        """Atomically re-parent a node if its parent is still the expected one.

        The write also requires the new parent to still exist. Returns False when
        either condition no longer holds, leaving the row untouched.
        """
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE documents SET parent_id = ?, updated = ? "
                "WHERE id = ? AND parent_id IS ? "
                "AND (? IS NULL OR EXISTS (SELECT 1 FROM documents WHERE id = ?))",
                (new_parent_id, updated, node_id, expected_parent_id, new_parent_id, new_parent_id),
            )
        return cur.rowcount == 1

    def delete_node(self, node_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM documents WHERE id = ?", (node_id,))
        return cur.rowcount == 1

    def delete_nodes(self, node_ids: Iterable[str]) -> int:
        """Delete nodes one by one, in the given order. Returns how many existed."""
        deleted = 0
        for node_id in node_ids:
            if self.delete_node(node_id):
                deleted += 1
        return deleted
