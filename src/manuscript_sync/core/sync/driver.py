"""Full reconciliation pass: replay the external store's listing into the cache.

Field ownership during a pass:
- title, kind, order, synopsis: the external store wins.
- parent, content, word count: the cache wins. Parent placement from the external store is
  only adopted for nodes the pass creates.
"""

import time
import uuid
from dataclasses import dataclass, field, replace

from loguru import logger

from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.core.tree.index import ancestor_ids, build_tree_index
from manuscript_sync.errors import AuthorizationError, ExternalStoreError
from manuscript_sync.models.node import (
    DocumentKind,
    DocumentNode,
    ExternalDocument,
    Project,
    SyncStatus,
)
from manuscript_sync.protocols import ExternalStoreProtocol

# Fields copied from the external listing onto matched cache nodes.
_EXTERNAL_FIELDS = (
    ("title", "name"),
    ("kind", "kind"),
    ("order", "order"),
    ("synopsis", "synopsis"),
)


@dataclass
class SyncReport:
    """Summary of one reconciliation pass."""

    project_id: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    detached: int = 0
    unmirrored: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted or self.detached)


def _creation_order(pending: list[ExternalDocument]) -> list[ExternalDocument]:
    """Order new external documents so every parent comes before its children."""
    pending_refs = {d.ref for d in pending}
    ordered: list[ExternalDocument] = []
    placed: set[str] = set()
    remaining = list(pending)
    while remaining:
        ready = [
            d for d in remaining
            if d.parent_ref not in pending_refs or d.parent_ref in placed
        ]
        if not ready:
            # Cyclic parent refs in the listing; place the rest as they come.
            ready = remaining
        for doc in ready:
            ordered.append(doc)
            placed.add(doc.ref)
        ready_refs = {d.ref for d in ready}
        remaining = [d for d in remaining if d.ref not in ready_refs]
    return ordered


class SyncDriver:
    """Diff the external listing against the cache and repair the cache."""

    def __init__(self, store: CacheStore, external: ExternalStoreProtocol) -> None:
        self.store = store
        self.external = external

    def run(self, project_id: str) -> SyncReport:
        """Run one pass. The project always ends in ``synced`` or ``error``."""
        project = self.store.get_project(project_id)
        logger.info("Starting sync for project {!r}", project.name)
        self.store.set_sync_status(project.id, SyncStatus.SYNCING, error=project.sync_error)
        try:
            report = self._reconcile(project)
        except Exception as e:
            logger.exception("Sync failed for project {!r}", project.name)
            message = str(e) or type(e).__name__
            self.store.set_sync_status(project.id, SyncStatus.ERROR, error=message)
            raise

        self.store.set_sync_status(
            project.id, SyncStatus.SYNCED, last_sync_at=int(time.time() * 1000), error=None
        )
        logger.info(
            "Sync complete for {!r}: {} created, {} updated, {} deleted, {} unmirrored",
            project.name, report.created, report.updated, report.deleted, report.unmirrored,
        )
        return report

    def _reconcile(self, project: Project) -> SyncReport:
        if not project.root_folder_id:
            msg = f"Project '{project.name}' has no root folder - cannot sync"
            raise ExternalStoreError(msg)
        project_ref = project.root_folder_id

        metadata = self.external.get_project_metadata(project_ref)
        logger.debug("External project metadata: {}", metadata)
        listing = self.external.list_documents(project_ref)
        external_by_ref = {d.ref: d for d in listing}

        report = SyncReport(project_id=project.id)
        cache_nodes = self.store.list_nodes(project.id)
        report.unmirrored = sum(1 for n in cache_nodes if not n.external_id)

        self._delete_stale(cache_nodes, external_by_ref, report)

        by_external = {
            n.external_id: n for n in self.store.list_nodes(project.id) if n.external_id
        }
        self._update_matched(by_external, external_by_ref, report)

        pending = [d for d in listing if d.ref not in by_external]
        self._create_missing(project, pending, by_external, report)
        return report

    def _delete_stale(
        self,
        cache_nodes: list[DocumentNode],
        external_by_ref: dict[str, ExternalDocument],
        report: SyncReport,
    ) -> None:
        """Delete cache nodes whose external document is gone, deepest first."""
        index = build_tree_index(cache_nodes)
        stale = [n for n in cache_nodes if n.external_id and n.external_id not in external_by_ref]
        if not stale:
            return
        stale.sort(key=lambda n: len(ancestor_ids(n.id, index)), reverse=True)
        stale_ids = {n.id for n in stale}

        for node in stale:
            with self.store.node_locks.hold(node.id):
                for child in self.store.find_children(node.id):
                    if child.id in stale_ids:
                        continue
                    # Still present externally (or never mirrored): keep it at root level.
                    self.store.update_node(
                        child.id, parent_id=None, updated=int(time.time() * 1000)
                    )
                    report.detached += 1
                    report.warnings.append(
                        f"'{child.title}' lost its parent '{node.title}' and was moved to the root"
                    )
                if self.store.delete_node(node.id):
                    report.deleted += 1
                    logger.debug("Removed deleted document {!r}", node.title)

    def _update_matched(
        self,
        by_external: dict[str, DocumentNode],
        external_by_ref: dict[str, ExternalDocument],
        report: SyncReport,
    ) -> None:
        """Copy external-owned fields onto matched nodes where they differ."""
        for ref, node in list(by_external.items()):
            doc = external_by_ref.get(ref)
            if doc is None:
                continue
            changes = {
                attr: getattr(doc, ext_attr)
                for attr, ext_attr in _EXTERNAL_FIELDS
                if getattr(node, attr) != getattr(doc, ext_attr)
            }
            if not changes:
                continue
            with self.store.node_locks.hold(node.id):
                if self.store.get_node(node.id) is None:
                    continue
                demoting = "kind" in changes and not doc.kind.is_container
                if demoting and self.store.find_children(node.id):
                    report.warnings.append(
                        f"Kept '{node.title}' as {node.kind}: it has children and cannot "
                        f"become a {doc.kind}"
                    )
                    del changes["kind"]
                if not changes:
                    continue
                updated = self.store.update_node(
                    node.id, **changes, updated=int(time.time() * 1000)
                )
            by_external[ref] = updated
            report.updated += 1
            logger.debug("Updated {!r} from external store: {}", updated.title, sorted(changes))

    def _create_missing(
        self,
        project: Project,
        pending: list[ExternalDocument],
        by_external: dict[str, DocumentNode],
        report: SyncReport,
    ) -> None:
        """Create cache nodes for external documents the cache does not know yet."""
        for doc in _creation_order(pending):
            parent = by_external.get(doc.parent_ref) if doc.parent_ref else None
            if parent is not None and not parent.is_container:
                report.warnings.append(
                    f"'{doc.name}' is filed under {parent.kind} '{parent.title}'; "
                    "placed at the root instead"
                )
                parent = None

            now_ms = int(time.time() * 1000)
            node = DocumentNode(
                id=uuid.uuid4().hex,
                project_id=project.id,
                parent_id=parent.id if parent else None,
                kind=doc.kind,
                title=doc.name,
                order=doc.order,
                created=doc.modified or now_ms,
                updated=now_ms,
                synopsis=doc.synopsis,
                include_in_compile=doc.kind == DocumentKind.SCENE,
                external_id=doc.ref,
            )
            with self.store.node_locks.hold(node.parent_id):
                if not self.store.insert_node_if_parent_exists(node):
                    report.warnings.append(
                        f"'{doc.name}' lost its parent during the sync; placed at the root"
                    )
                    node = self.store.insert_node(replace(node, parent_id=None))
            by_external[doc.ref] = node
            report.created += 1
            logger.debug("Created document from external store: {!r}", doc.name)


def request_sync(
    store: CacheStore,
    external: ExternalStoreProtocol,
    project_id: str,
    principal: str | None,
) -> Project:
    """Authorize and run a pass; return the project with its resulting sync status.

    External store failures are recorded on the project rather than raised, so callers
    can show them as a status badge.
    """
    project = store.get_project(project_id)
    if not principal or project.owner_id != principal:
        msg = f"Not authorized to sync project '{project.name}'."
        raise AuthorizationError(msg)
    try:
        SyncDriver(store, external).run(project.id)
    except ExternalStoreError as e:
        logger.warning("Sync of {!r} failed: {}", project.name, e)
    return store.get_project(project.id)
