"""Cycle guard: reject moves that would make a node its own ancestor."""

from collections.abc import Iterable, Mapping

from manuscript_sync.models.node import DocumentNode


def is_descendant(
    candidate_ancestor_id: str,
    node_id: str | None,
    nodes: Iterable[DocumentNode] | Mapping[str, DocumentNode],
) -> bool:
    """Return True if candidate_ancestor_id appears on node_id's parent chain.

    The chain starts at node_id itself, so is_descendant(a, a, ...) is True. The walk
    stops at a parentless or unknown node, or at the first id seen twice (pre-existing
    cyclic data), and returns False in those cases.
    """
    by_id = nodes if isinstance(nodes, Mapping) else {n.id: n for n in nodes}
    visited: set[str] = set()
    current = node_id
    while current is not None:
        if current == candidate_ancestor_id:
            return True
        if current in visited:
            return False
        visited.add(current)
        node = by_id.get(current)
        if node is None:
            return False
        current = node.parent_id
    return False
