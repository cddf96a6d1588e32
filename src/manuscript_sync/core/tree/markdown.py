"""Render a manuscript tree (or a subtree) as an indented markdown outline."""

import io
from collections.abc import Iterable

from manuscript_sync.core.tree.index import build_tree_index
from manuscript_sync.models.node import DocumentNode


def render_outline_as_markdown(
    nodes: Iterable[DocumentNode],
    *,
    node_id: str | None = None,
    max_depth: int | None = None,
    include_synopsis: bool = True,
) -> str:
    """Render nodes as an indented markdown list.

    Args:
        nodes: All nodes of the project.
        node_id: Subtree root to render (None = the whole project).
        max_depth: Max levels below the start to include (None = unlimited).
        include_synopsis: Whether to include synopses.

    Returns:
        Markdown string with bullet-list hierarchy. Each line shows kind, status
        and the aggregated word count of the node's subtree.
    """
    index = build_tree_index(nodes)
    if node_id is not None:
        start = index.by_id.get(node_id)
        if start is None:
            return ""
        starts: tuple[DocumentNode, ...] = (start,)
    else:
        starts = index.roots

    # Aggregated counts for every node, filled bottom-up after a pre-order walk.
    order: list[tuple[DocumentNode, int]] = []
    seen: set[str] = set()
    stack = [(n, 0) for n in reversed(starts)]
    while stack:
        node, depth = stack.pop()
        if node.id in seen:
            continue
        seen.add(node.id)
        order.append((node, depth))
        stack.extend((c, depth + 1) for c in reversed(index.children_of(node.id)))

    totals: dict[str, int] = {}
    for node, _depth in reversed(order):
        totals[node.id] = node.word_count + sum(
            totals.get(c.id, 0) for c in index.children_of(node.id)
        )

    out = io.StringIO()
    for node, depth in order:
        if max_depth is not None and depth > max_depth:
            continue
        indent = "    " * depth
        words = totals[node.id]
        out.write(f"{indent}- {node.title} ({node.kind}, {node.status}, {words} words)\n")

        if include_synopsis and node.synopsis:
            for line in node.synopsis.split("\n"):
                out.write(f"{indent}  > {line}\n")

        child_count = len(index.children_of(node.id))
        if max_depth is not None and depth == max_depth and child_count > 0:
            child_indent = "    " * (depth + 1)
            noun = "child" if child_count == 1 else "children"
            out.write(f"{child_indent}- ... ({child_count} more {noun}, id={node.id})\n")

    return out.getvalue()
