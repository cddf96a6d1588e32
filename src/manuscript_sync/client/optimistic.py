"""Optimistic client-side tree: apply plans immediately, revert when the server says no."""

from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from loguru import logger

from manuscript_sync.client.view_state import ViewState
from manuscript_sync.core.tree.index import TreeIndex, build_tree_index
from manuscript_sync.core.tree.planner import (
    CreatePlan,
    DeletePlan,
    MovePlan,
    Plan,
    plan_create,
    plan_delete,
    plan_move,
)
from manuscript_sync.errors import Busy
from manuscript_sync.models.node import (
    CanDeleteResult,
    DeleteResult,
    DocumentKind,
    DocumentNode,
    Project,
)
from manuscript_sync.protocols import RemoteProtocol


@dataclass(frozen=True)
class Snapshot:
    """Pre-mutation state of everything a plan touched.

    before maps node id to the prior node, or None when the node did not exist.
    """

    plan: Plan
    before: dict[str, DocumentNode | None]
    selected_id: str | None = None
    focused_id: str | None = None
    expanded: frozenset[str] = field(default_factory=frozenset)
    removed: frozenset[str] = field(default_factory=frozenset)


class OptimisticClient:
    """Local view of one project tree with optimistic structural mutations.

    Only one structural mutation (move or delete) may be in flight at a time; a second
    one is rejected with Busy instead of being queued.
    """

    def __init__(
        self,
        nodes: Iterable[DocumentNode],
        remote: RemoteProtocol,
        *,
        view_state: ViewState | None = None,
    ) -> None:
        self.nodes: dict[str, DocumentNode] = {n.id: n for n in nodes}
        self.remote = remote
        self.view_state = view_state or ViewState()
        self._in_flight: Plan | None = None

    @property
    def index(self) -> TreeIndex:
        return build_tree_index(self.nodes.values())

    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    def edges(self) -> dict[str, str | None]:
        """node id -> parent id, for structural comparisons."""
        return {node_id: node.parent_id for node_id, node in self.nodes.items()}

    def replace_nodes(self, nodes: Iterable[DocumentNode]) -> None:
        """Replace the local view wholesale, e.g. after a sync."""
        self.nodes = {n.id: n for n in nodes}
        self.view_state.forget({i for i in self.view_state.expanded if i not in self.nodes})

    # --- Planning ---

    def plan_create(
        self,
        title: str,
        kind: str | DocumentKind,
        project_id: str | None,
        *,
        selected_id: str | None = None,
        synopsis: str = "",
    ) -> CreatePlan:
        selection = selected_id if selected_id is not None else self.view_state.selected_id
        return plan_create(
            title, kind, project_id, self.nodes, selected_id=selection, synopsis=synopsis
        )

    def plan_move(self, node_id: str, new_parent_id: str | None) -> MovePlan:
        return plan_move(node_id, new_parent_id, self.nodes)

    def plan_delete(self, node_id: str, *, force: bool = False) -> DeletePlan:
        return plan_delete(node_id, self.nodes, force=force)

    # --- Apply / revert ---

    def apply_optimistic(self, plan: Plan) -> Snapshot:
        """Apply a plan to the local view synchronously and return how to undo it."""
        before = {node_id: self.nodes.get(node_id) for node_id in plan.touched_ids}
        snapshot = Snapshot(
            plan=plan,
            before=before,
            selected_id=self.view_state.selected_id,
            focused_id=self.view_state.focused_id,
            expanded=frozenset(self.view_state.expanded),
            removed=frozenset(plan.deleted_ids) if isinstance(plan, DeletePlan) else frozenset(),
        )

        if isinstance(plan, CreatePlan):
            self.nodes[plan.node.id] = plan.node
            self.view_state.expand(plan.node.parent_id)
        elif isinstance(plan, MovePlan):
            self.nodes[plan.node_id] = replace(
                self.nodes[plan.node_id], parent_id=plan.new_parent_id
            )
            self.view_state.expand(plan.new_parent_id)
        else:
            for node_id in plan.deleted_ids:
                self.nodes.pop(node_id, None)
            self.view_state.forget(set(plan.deleted_ids))
        return snapshot

    def revert_optimistic(self, snapshot: Snapshot) -> None:
        """Restore every node the plan touched to its exact prior state."""
        for node_id, prior in snapshot.before.items():
            if prior is None:
                self.nodes.pop(node_id, None)
            else:
                self.nodes[node_id] = prior
        if snapshot.removed:
            self.view_state.expanded |= snapshot.expanded & snapshot.removed
            if self.view_state.selected_id is None and snapshot.selected_id in snapshot.removed:
                self.view_state.selected_id = snapshot.selected_id
            if self.view_state.focused_id is None and snapshot.focused_id in snapshot.removed:
                self.view_state.focused_id = snapshot.focused_id

    def _fail(self, snapshot: Snapshot, action: str, title: str, error: Exception) -> None:
        self.revert_optimistic(snapshot)
        self.view_state.notice = f"Could not {action} '{title}': {error}"
        logger.warning("Reverted optimistic {} of {!r}: {}", action, title, error)

    # --- Round trips ---

    async def create(
        self,
        title: str,
        kind: str | DocumentKind,
        project_id: str | None,
        *,
        selected_id: str | None = None,
        synopsis: str = "",
    ) -> DocumentNode:
        """Create a node locally, then on the server; swap in the server's node."""
        plan = self.plan_create(
            title, kind, project_id, selected_id=selected_id, synopsis=synopsis
        )
        snapshot = self.apply_optimistic(plan)
        temp = plan.node
        try:
            created = await self.remote.create_document(
                temp.project_id, temp.title, temp.kind, temp.parent_id, temp.synopsis
            )
        except Exception as e:
            self._fail(snapshot, "create", temp.title, e)
            raise

        self.nodes.pop(temp.id, None)
        self.nodes[created.id] = created
        self.view_state.rename(temp.id, created.id)
        return created

    async def move(self, node_id: str, new_parent_id: str | None) -> DocumentNode:
        """Move a node locally, then on the server. Reverts on failure."""
        if self._in_flight is not None:
            msg = "Another move or delete is still in progress."
            raise Busy(msg)
        plan = self.plan_move(node_id, new_parent_id)
        title = self.nodes[node_id].title
        snapshot = self.apply_optimistic(plan)
        self._in_flight = plan
        try:
            moved = await self.remote.move_document(node_id, new_parent_id)
        except Exception as e:
            self._fail(snapshot, "move", title, e)
            raise
        finally:
            self._in_flight = None

        self.nodes[moved.id] = moved
        return moved

    async def delete(self, node_id: str, *, force: bool = False) -> DeleteResult:
        """Delete a node (and its subtree) locally, then on the server."""
        if self._in_flight is not None:
            msg = "Another move or delete is still in progress."
            raise Busy(msg)
        plan = self.plan_delete(node_id, force=force)
        title = self.nodes[node_id].title
        snapshot = self.apply_optimistic(plan)
        self._in_flight = plan
        try:
            result = await self.remote.delete_document(node_id, force)
        except Exception as e:
            self._fail(snapshot, "delete", title, e)
            raise
        finally:
            self._in_flight = None
        return result

    async def can_delete(self, node_id: str) -> CanDeleteResult:
        return await self.remote.can_delete(node_id)

    async def request_sync(self, project_id: str) -> Project:
        return await self.remote.request_sync(project_id)
