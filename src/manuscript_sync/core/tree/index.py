"""In-memory tree index: parent -> ordered children, descendant walks, word counts."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from manuscript_sync.models.node import DocumentNode

# Key under which parentless nodes are grouped.
ROOT_KEY = "__root__"


def _sort_key(node: DocumentNode) -> tuple[int, int, str]:
    return (node.order, node.created, node.id)


@dataclass(frozen=True)
class TreeIndex:
    """Parent -> children grouping of a flat node list."""

    children: Mapping[str, tuple[DocumentNode, ...]] = field(default_factory=dict)
    roots: tuple[DocumentNode, ...] = ()
    by_id: Mapping[str, DocumentNode] = field(default_factory=dict)

    def children_of(self, parent_id: str | None) -> tuple[DocumentNode, ...]:
        return self.children.get(ROOT_KEY if parent_id is None else parent_id, ())

    def __len__(self) -> int:
        return len(self.by_id)


def build_tree_index(nodes: Iterable[DocumentNode]) -> TreeIndex:
    """Group nodes by parent, siblings sorted by order then creation time.

    Nodes whose parent is not in the input are grouped under their parent id but are not
    roots; the index never invents structure.
    """
    grouped: dict[str, list[DocumentNode]] = {}
    by_id: dict[str, DocumentNode] = {}
    for node in nodes:
        by_id[node.id] = node
        key = ROOT_KEY if node.parent_id is None else node.parent_id
        grouped.setdefault(key, []).append(node)

    children = {key: tuple(sorted(group, key=_sort_key)) for key, group in grouped.items()}
    return TreeIndex(children=children, roots=children.get(ROOT_KEY, ()), by_id=by_id)


def _as_index(nodes: TreeIndex | Iterable[DocumentNode]) -> TreeIndex:
    return nodes if isinstance(nodes, TreeIndex) else build_tree_index(nodes)


def descendant_ids(node_id: str, nodes: TreeIndex | Iterable[DocumentNode]) -> list[str]:
    """All descendants of node_id, children listed before their parents.

    The walk is iterative with a visited set, so cyclic corruption cannot loop forever.
    The node itself is not included.
    """
    index = _as_index(nodes)
    visited = {node_id}
    # Pre-order walk; reversed at the end so every child precedes its parent.
    pre_order: list[str] = []
    stack = [node_id]
    while stack:
        current = stack.pop()
        for child in index.children_of(current):
            if child.id in visited:
                continue
            visited.add(child.id)
            pre_order.append(child.id)
            stack.append(child.id)
    pre_order.reverse()
    return pre_order


def aggregate_word_count(node_id: str, nodes: TreeIndex | Iterable[DocumentNode]) -> int:
    """Own word count plus the word counts of every descendant."""
    index = _as_index(nodes)
    node = index.by_id.get(node_id)
    total = node.word_count if node else 0
    for descendant in descendant_ids(node_id, index):
        total += index.by_id[descendant].word_count
    return total


def ancestor_ids(node_id: str, nodes: TreeIndex | Iterable[DocumentNode]) -> list[str]:
    """Parent chain from the immediate parent up to the root."""
    index = _as_index(nodes)
    chain: list[str] = []
    seen = {node_id}
    node = index.by_id.get(node_id)
    while node is not None and node.parent_id is not None and node.parent_id not in seen:
        chain.append(node.parent_id)
        seen.add(node.parent_id)
        node = index.by_id.get(node.parent_id)
    return chain
