"""Mutation planner: compute the effect of create/move/delete without touching a store."""

import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from manuscript_sync.core.tree.cycles import is_descendant
from manuscript_sync.core.tree.index import build_tree_index, descendant_ids
from manuscript_sync.errors import (
    InvalidMoveError,
    NonEmptyContainerError,
    NotFoundError,
    ValidationError,
)
from manuscript_sync.models.node import ChildSummary, DocumentKind, DocumentNode

TEMP_ID_PREFIX = "tmp-"


@dataclass(frozen=True)
class CreatePlan:
    """Insert one provisional node."""

    node: DocumentNode

    @property
    def touched_ids(self) -> tuple[str, ...]:
        return (self.node.id,)


@dataclass(frozen=True)
class MovePlan:
    """Change the parent of one node; sibling order values are left alone."""

    node_id: str
    old_parent_id: str | None
    new_parent_id: str | None

    @property
    def touched_ids(self) -> tuple[str, ...]:
        return (self.node_id,)


@dataclass(frozen=True)
class DeletePlan:
    """Remove a node and its whole subtree.

    deleted_ids lists children before their parents; the target node comes last.
    """

    node_id: str
    deleted_ids: tuple[str, ...]

    @property
    def touched_ids(self) -> tuple[str, ...]:
        return self.deleted_ids


Plan = CreatePlan | MovePlan | DeletePlan


NodeSource = Iterable[DocumentNode] | Mapping[str, DocumentNode]


def _by_id(nodes: NodeSource) -> Mapping[str, DocumentNode]:
    return nodes if isinstance(nodes, Mapping) else {n.id: n for n in nodes}


def _require(by_id: Mapping[str, DocumentNode], node_id: str) -> DocumentNode:
    node = by_id.get(node_id)
    if node is None:
        msg = f"Document '{node_id}' not found."
        raise NotFoundError(msg)
    return node


def parse_kind(kind: str | DocumentKind) -> DocumentKind:
    try:
        return DocumentKind(kind)
    except ValueError:
        msg = f"Unknown document kind: {kind!r}"
        raise ValidationError(msg) from None


def validate_title(title: str | None) -> str:
    if title is None or not title.strip():
        msg = "Title must not be empty."
        raise ValidationError(msg)
    return title.strip()


def resolve_create_parent(
    selected_id: str | None, by_id: Mapping[str, DocumentNode]
) -> str | None:
    """Effective parent for a new node given the current selection.

    A selected container becomes the parent; a selected leaf makes the new node its
    sibling; no selection means root level.
    """
    if selected_id is None:
        return None
    selected = _require(by_id, selected_id)
    if selected.is_container:
        return selected.id
    return selected.parent_id


def plan_create(
    title: str,
    kind: str | DocumentKind,
    project_id: str | None,
    nodes: NodeSource,
    *,
    selected_id: str | None = None,
    synopsis: str = "",
) -> CreatePlan:
    """Plan creating a node under the effective parent of the selection."""
    clean_title = validate_title(title)
    if not project_id:
        msg = "A project is required to create a document."
        raise ValidationError(msg)
    doc_kind = parse_kind(kind)

    by_id = _by_id(nodes)
    parent_id = resolve_create_parent(selected_id, by_id)
    sibling_count = sum(1 for n in by_id.values() if n.parent_id == parent_id)
    now_ms = int(time.time() * 1000)

    node = DocumentNode(
        id=f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}",
        project_id=project_id,
        parent_id=parent_id,
        kind=doc_kind,
        title=clean_title,
        order=sibling_count,
        created=now_ms,
        updated=now_ms,
        synopsis=synopsis,
        include_in_compile=doc_kind == DocumentKind.SCENE,
    )
    return CreatePlan(node=node)


def validate_move(
    node: DocumentNode,
    new_parent: DocumentNode | None,
    nodes: NodeSource,
) -> None:
    """Raise InvalidMoveError if moving node under new_parent breaks the tree rules."""
    if new_parent is None:
        return
    if new_parent.id == node.id:
        msg = f"Cannot move '{node.title}' into itself."
        raise InvalidMoveError(msg)
    if not new_parent.is_container:
        msg = f"Cannot move '{node.title}' into {new_parent.kind} '{new_parent.title}'."
        raise InvalidMoveError(msg)
    if new_parent.project_id != node.project_id:
        msg = f"Cannot move '{node.title}' into another project."
        raise InvalidMoveError(msg)
    if is_descendant(node.id, new_parent.id, nodes):
        msg = f"Cannot move '{node.title}' into its own subtree."
        raise InvalidMoveError(msg)


def plan_move(
    node_id: str,
    new_parent_id: str | None,
    nodes: NodeSource,
) -> MovePlan:
    """Plan re-parenting node_id under new_parent_id (None = root level)."""
    by_id = _by_id(nodes)
    node = _require(by_id, node_id)
    if new_parent_id == node_id:
        msg = f"Cannot move '{node.title}' into itself."
        raise InvalidMoveError(msg)
    new_parent = _require(by_id, new_parent_id) if new_parent_id is not None else None
    validate_move(node, new_parent, by_id)
    return MovePlan(node_id=node_id, old_parent_id=node.parent_id, new_parent_id=new_parent_id)


def child_summaries(children: Iterable[DocumentNode]) -> tuple[ChildSummary, ...]:
    return tuple(ChildSummary(node_id=c.id, title=c.title, kind=c.kind) for c in children)


def plan_delete(
    node_id: str,
    nodes: NodeSource,
    *,
    force: bool = False,
) -> DeletePlan:
    """Plan deleting node_id and its subtree.

    A container that still has descendants is only deleted with force; otherwise a
    NonEmptyContainerError describes what would be lost.
    """
    by_id = _by_id(nodes)
    node = _require(by_id, node_id)
    index = build_tree_index(by_id.values())
    descendants = descendant_ids(node_id, index)

    if node.is_container and descendants and not force:
        direct = index.children_of(node_id)
        msg = (
            f"'{node.title}' contains {len(descendants)} document(s); "
            "delete with force to remove them too."
        )
        raise NonEmptyContainerError(
            msg, child_count=len(descendants), children=child_summaries(direct)
        )

    return DeletePlan(node_id=node_id, deleted_ids=(*descendants, node_id))
