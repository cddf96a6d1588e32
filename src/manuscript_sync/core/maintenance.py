"""Cache health statistics and cleanup of entries that can never be reconciled."""

from dataclasses import dataclass

from loguru import logger

from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.core.tree.index import build_tree_index, descendant_ids
from manuscript_sync.models.node import DocumentNode


@dataclass(frozen=True)
class CacheStats:
    """Totals and problem counts for the cache store."""

    projects: int
    documents: int
    projects_without_folder: int
    documents_without_external_id: int
    orphaned_documents: int

    @property
    def needs_cleanup(self) -> bool:
        return bool(
            self.projects_without_folder
            or self.documents_without_external_id
            or self.orphaned_documents
        )


@dataclass(frozen=True)
class CleanupReport:
    """What cleanup_cache removed."""

    projects_removed: int
    documents_removed: int


def _orphans(nodes: list[DocumentNode], project_ids: set[str]) -> list[DocumentNode]:
    """Nodes whose project or parent no longer exists."""
    node_ids = {n.id for n in nodes}
    return [
        n for n in nodes
        if n.project_id not in project_ids
        or (n.parent_id is not None and n.parent_id not in node_ids)
    ]


def get_stats(store: CacheStore) -> CacheStats:
    projects = store.list_projects()
    nodes = store.list_all_nodes()
    return CacheStats(
        projects=len(projects),
        documents=len(nodes),
        projects_without_folder=sum(1 for p in projects if not p.root_folder_id),
        documents_without_external_id=sum(1 for n in nodes if not n.external_id),
        orphaned_documents=len(_orphans(nodes, {p.id for p in projects})),
    )


def _delete_with_subtrees(store: CacheStore, roots: list[DocumentNode]) -> int:
    """Delete each root and its descendants, children before parents."""
    index = build_tree_index(store.list_all_nodes())
    doomed: list[str] = []
    seen: set[str] = set()
    for root in roots:
        if root.id in seen:
            continue
        for node_id in (*descendant_ids(root.id, index), root.id):
            if node_id not in seen:
                seen.add(node_id)
                doomed.append(node_id)
    return store.delete_nodes(doomed)


def cleanup_cache(store: CacheStore) -> CleanupReport:
    """Remove cache entries that cannot be reconciled with the external store.

    - projects without a root folder, with all their documents;
    - documents that never received an external id;
    - documents whose project or parent no longer exists.
    """
    logger.info("Starting cache cleanup")
    projects_removed = 0
    documents_removed = 0

    for project in store.list_projects():
        if not project.root_folder_id:
            documents_removed += store.delete_project(project.id)
            projects_removed += 1
            logger.debug("Removed project without root folder: {!r}", project.name)

    unmirrored = [n for n in store.list_all_nodes() if not n.external_id]
    documents_removed += _delete_with_subtrees(store, unmirrored)

    project_ids = {p.id for p in store.list_projects()}
    orphans = _orphans(store.list_all_nodes(), project_ids)
    documents_removed += _delete_with_subtrees(store, orphans)

    logger.info(
        "Cache cleanup complete: {} projects, {} documents removed",
        projects_removed, documents_removed,
    )
    return CleanupReport(projects_removed=projects_removed, documents_removed=documents_removed)
