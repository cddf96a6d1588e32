"""Server-side authority for structural and metadata mutations.

Every request re-validates ownership and tree rules against the cache store, writes the
cache store, then mirrors the change to the external store best-effort. The cache store
is the primary record for structural operations; a failed mirror write never rolls it
back.
"""

import time
import uuid
from typing import Any

from loguru import logger

from manuscript_sync.core.reconcile.mirror import ExternalMirror
from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.core.tree.planner import (
    child_summaries,
    parse_kind,
    plan_delete,
    resolve_create_parent,
    validate_move,
    validate_title,
)
from manuscript_sync.errors import (
    AuthorizationError,
    ExternalStoreError,
    InvalidMoveError,
    NotFoundError,
    ValidationError,
)
from manuscript_sync.models.node import (
    CanDeleteResult,
    DeleteResult,
    DocumentKind,
    DocumentNode,
    DocumentStatus,
    MutationResult,
    Project,
)
from manuscript_sync.protocols import ExternalStoreProtocol

_EDITABLE_FIELDS = frozenset(
    {"title", "synopsis", "tags", "status", "include_in_compile", "content", "word_count", "order"}
)

# Fields the external store keeps a copy of, with the name it uses.
_MIRRORED_FIELDS = {"title": "name", "synopsis": "synopsis", "order": "order"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require_root(project: Project) -> str:
    if not project.root_folder_id:
        msg = f"Project '{project.name}' has no root folder in the external store"
        raise ExternalStoreError(msg)
    return project.root_folder_id


class ReconciliationService:
    """Validates and applies mutations to the cache store and the external store."""

    def __init__(
        self,
        store: CacheStore,
        external: ExternalStoreProtocol,
        mirror: ExternalMirror | None = None,
    ) -> None:
        self.store = store
        self.external = external
        self.mirror = mirror or ExternalMirror()

    # --- Resolution and authorization ---

    def _authorize(self, principal: str | None, project: Project) -> None:
        if not principal or project.owner_id != principal:
            msg = f"Not authorized to modify project '{project.name}'."
            raise AuthorizationError(msg)

    def load_project(self, principal: str | None, project_id: str | None) -> Project:
        if not project_id:
            msg = "A project id is required."
            raise ValidationError(msg)
        project = self.store.get_project(project_id)
        self._authorize(principal, project)
        return project

    def _load(self, principal: str | None, ref: str) -> tuple[DocumentNode, Project]:
        node = self.store.resolve_node(ref)
        project = self.store.get_project(node.project_id)
        self._authorize(principal, project)
        return node, project

    def _fresh(self, node_id: str) -> DocumentNode:
        node = self.store.get_node(node_id)
        if node is None:
            msg = f"Document '{node_id}' not found."
            raise NotFoundError(msg)
        return node

    # --- Queries ---

    def list_documents(self, principal: str | None, project_id: str) -> list[DocumentNode]:
        project = self.load_project(principal, project_id)
        return self.store.list_nodes(project.id)

    def get_document(self, principal: str | None, ref: str) -> DocumentNode:
        node, _project = self._load(principal, ref)
        return node

    def can_delete(self, principal: str | None, ref: str) -> CanDeleteResult:
        """Deletable without force iff the node has no direct children."""
        node, _project = self._load(principal, ref)
        children = self.store.find_children(node.id)
        return CanDeleteResult(
            can_delete=not children,
            child_count=len(children),
            children=child_summaries(children),
        )

    # --- Projects ---

    def create_project(
        self,
        owner_id: str,
        name: str,
        *,
        description: str = "",
        root_folder_id: str | None = None,
    ) -> Project:
        """Register a project. Without a root folder ref one is created externally."""
        clean_name = validate_title(name)
        if root_folder_id is None:
            root_folder_id = self.external.create_container(clean_name, None)
        project = Project(
            id=uuid.uuid4().hex,
            name=clean_name,
            owner_id=owner_id,
            root_folder_id=root_folder_id,
            created=_now_ms(),
            description=description,
        )
        self.store.insert_project(project)
        logger.info("Created project {!r} ({})", clean_name, project.id)
        return project

    def delete_project(self, principal: str | None, project_id: str) -> DeleteResult:
        """Delete a project with all its nodes; mirror the root folder deletion."""
        project = self.load_project(principal, project_id)
        nodes = self.store.list_nodes(project.id)
        deleted = self.store.delete_project(project.id)
        logger.info("Deleted project {!r} and {} documents", project.name, deleted)

        warnings: list[str] = []
        if project.root_folder_id:
            root = project.root_folder_id
            warnings += self.mirror.submit(
                f"delete project folder {root}",
                lambda: self.external.delete_document(root, root),
            )
        return DeleteResult(
            deleted_count=deleted,
            deleted_ids=tuple(n.id for n in nodes),
            warnings=tuple(warnings),
        )

    # --- Create ---

    def create_document(
        self,
        principal: str | None,
        project_id: str | None,
        title: str,
        kind: str | DocumentKind,
        parent_id: str | None = None,
        synopsis: str = "",
    ) -> MutationResult:
        """Create a node under the effective parent of parent_id.

        A leaf parent_id makes the new node its sibling, matching the client planner.
        """
        clean_title = validate_title(title)
        doc_kind = parse_kind(kind)
        project = self.load_project(principal, project_id)

        effective_parent: str | None = None
        if parent_id is not None:
            selected = self.store.resolve_node(parent_id)
            if selected.project_id != project.id:
                msg = f"Parent '{parent_id}' belongs to another project."
                raise ValidationError(msg)
            effective_parent = resolve_create_parent(selected.id, {selected.id: selected})

        with self.store.node_locks.hold(effective_parent):
            if effective_parent is not None:
                parent = self._fresh(effective_parent)
                if not parent.is_container:
                    msg = f"'{parent.title}' is now a {parent.kind} and cannot hold documents."
                    raise ValidationError(msg)
            now_ms = _now_ms()
            node = DocumentNode(
                id=uuid.uuid4().hex,
                project_id=project.id,
                parent_id=effective_parent,
                kind=doc_kind,
                title=clean_title,
                order=self.store.count_siblings(project.id, effective_parent),
                created=now_ms,
                updated=now_ms,
                synopsis=synopsis,
                include_in_compile=doc_kind == DocumentKind.SCENE,
            )
            if not self.store.insert_node_if_parent_exists(node):
                msg = f"Parent '{effective_parent}' was deleted by another request."
                raise NotFoundError(msg)
        logger.info("Created {} {!r} ({})", doc_kind, clean_title, node.id)

        warnings = self.mirror.submit(
            f"create {clean_title!r}", lambda: self._mirror_create(project, node)
        )
        return MutationResult(node=self.store.get_node(node.id) or node, warnings=tuple(warnings))

    def _mirror_create(self, project: Project, node: DocumentNode) -> None:
        project_ref = _require_root(project)
        parent = self.store.get_node(node.parent_id) if node.parent_id else None
        if parent is not None and not parent.external_id:
            msg = f"Parent '{parent.title}' is not in the external store yet"
            raise ExternalStoreError(msg)
        parent_ref = parent.external_id if parent is not None else project_ref

        if node.is_container:
            ref = self.external.create_container(node.title, parent_ref)
        else:
            ref = self.external.create_leaf_document(node.title, parent_ref, node.kind)

        with self.store.node_locks.hold(node.id):
            if self.store.get_node(node.id) is None:
                # Deleted while the mirror was running; do not leave an external orphan.
                self.external.delete_document(project_ref, ref)
                return
            self.store.update_node(node.id, external_id=ref)

        self.external.update_document(
            project_ref,
            ref,
            {"kind": str(node.kind), "order": node.order, "synopsis": node.synopsis},
        )

    # --- Move ---

    def move_document(
        self, principal: str | None, ref: str, new_parent_ref: str | None
    ) -> MutationResult:
        """Re-parent a node (None = root level) after validating it server-side."""
        node, project = self._load(principal, ref)
        new_parent_id: str | None = None
        if new_parent_ref is not None:
            new_parent_id = self.store.resolve_node(new_parent_ref).id
        if new_parent_id == node.id:
            msg = f"Cannot move '{node.title}' into itself."
            raise InvalidMoveError(msg)

        with self.store.node_locks.hold(node.id, new_parent_id):
            by_id = {n.id: n for n in self.store.list_nodes(project.id)}
            current = by_id.get(node.id)
            if current is None:
                msg = f"Document '{node.id}' not found."
                raise NotFoundError(msg)
            new_parent = None
            if new_parent_id is not None:
                new_parent = by_id.get(new_parent_id) or self._fresh(new_parent_id)
            validate_move(current, new_parent, by_id)

            if current.parent_id == new_parent_id:
                return MutationResult(node=current)

            if not self.store.update_parent_if_matches(
                current.id,
                expected_parent_id=current.parent_id,
                new_parent_id=new_parent_id,
                updated=_now_ms(),
            ):
                msg = f"'{current.title}' was changed by another request; reload and retry."
                raise InvalidMoveError(msg)
            moved = self._fresh(current.id)

        logger.info("Moved {!r} under {}", moved.title, new_parent_id or "root")
        warnings = self.mirror.submit(
            f"move {moved.title!r}", lambda: self._mirror_move(project, moved.id)
        )
        return MutationResult(node=moved, warnings=tuple(warnings))

    def _mirror_move(self, project: Project, node_id: str) -> None:
        project_ref = _require_root(project)
        node = self._fresh(node_id)
        if not node.external_id:
            msg = f"'{node.title}' is not in the external store yet"
            raise ExternalStoreError(msg)
        parent = self.store.get_node(node.parent_id) if node.parent_id else None
        if parent is not None and not parent.external_id:
            msg = f"Parent '{parent.title}' is not in the external store yet"
            raise ExternalStoreError(msg)
        parent_ref = parent.external_id if parent is not None else project_ref
        self.external.update_document(project_ref, node.external_id, {"parent": parent_ref})

    # --- Update ---

    def update_document(self, principal: str | None, ref: str, **fields: Any) -> MutationResult:
        """Edit descriptive or content fields of a node."""
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            msg = f"Cannot edit fields: {sorted(unknown)!r}"
            raise ValidationError(msg)
        changes = dict(fields)
        if "title" in changes:
            changes["title"] = validate_title(changes["title"])
        if "status" in changes:
            try:
                changes["status"] = DocumentStatus(changes["status"])
            except ValueError:
                msg = f"Unknown status: {changes['status']!r}"
                raise ValidationError(msg) from None
        if "word_count" in changes:
            count = changes["word_count"]
            if not isinstance(count, int) or isinstance(count, bool) or count < 0:
                msg = f"Word count must be a non-negative integer, got {count!r}"
                raise ValidationError(msg)
        if "tags" in changes:
            changes["tags"] = tuple(changes["tags"])

        node, project = self._load(principal, ref)
        now_ms = _now_ms()
        with self.store.node_locks.hold(node.id):
            self._fresh(node.id)
            changes["updated"] = now_ms
            if "content" in changes:
                changes["last_edited"] = now_ms
            updated = self.store.update_node(node.id, **changes)

        mirrored = {
            _MIRRORED_FIELDS[k]: changes[k] for k in _MIRRORED_FIELDS if k in changes
        }
        warnings: list[str] = []
        if mirrored:
            warnings = self.mirror.submit(
                f"update {updated.title!r}",
                lambda: self._mirror_update(project, updated.id, mirrored),
            )
        return MutationResult(node=updated, warnings=tuple(warnings))

    def _mirror_update(self, project: Project, node_id: str, fields: dict[str, Any]) -> None:
        project_ref = _require_root(project)
        node = self._fresh(node_id)
        if not node.external_id:
            msg = f"'{node.title}' is not in the external store yet"
            raise ExternalStoreError(msg)
        self.external.update_document(project_ref, node.external_id, fields)

    # --- Delete ---

    def delete_document(
        self, principal: str | None, ref: str, *, force: bool = False
    ) -> DeleteResult:
        """Delete a node; with force, a non-empty container and its whole subtree.

        The locks of every node in the subtree are held while it is deleted, so no move
        or create can touch it halfway. If the subtree grew while its locks were being
        taken, they are released and taken again for the larger set. Descendants are
        removed children-first so no read ever sees a node whose parent is already gone.
        """
        node, project = self._load(principal, ref)
        held = {node.id}
        while True:
            with self.store.node_locks.hold(*held):
                by_id = {n.id: n for n in self.store.list_nodes(project.id)}
                plan = plan_delete(node.id, by_id, force=force)
                if held.issuperset(plan.deleted_ids):
                    removed = [
                        by_id[node_id]
                        for node_id in plan.deleted_ids
                        if self.store.delete_node(node_id)
                    ]
                    break
            held = set(plan.deleted_ids)

        logger.info("Deleted {!r} ({} documents)", node.title, len(removed))

        warnings: list[str] = []
        for doomed in removed:
            if not doomed.external_id:
                continue
            external_id = doomed.external_id
            warnings += self.mirror.submit(
                f"delete {doomed.title!r}",
                lambda external_id=external_id: self.external.delete_document(
                    _require_root(project), external_id
                ),
            )
        return DeleteResult(
            deleted_count=len(removed),
            deleted_ids=tuple(n.id for n in removed),
            warnings=tuple(warnings),
        )
