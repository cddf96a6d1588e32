"""MCP server exposing the manuscript tree and its mutations as tools."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from loguru import logger
from mcp.server.fastmcp import Context, FastMCP

from manuscript_sync.api import ExternalStoreApi
from manuscript_sync.config import (
    CACHE_DB_NAME,
    MIRROR_WORKERS,
    resolve_data_directory,
    resolve_principal,
)
from manuscript_sync.core.reconcile.mirror import ExternalMirror
from manuscript_sync.core.reconcile.service import ReconciliationService
from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.core.sync.driver import request_sync
from manuscript_sync.core.tree.index import aggregate_word_count, build_tree_index
from manuscript_sync.core.tree.markdown import render_outline_as_markdown
from manuscript_sync.errors import ManuscriptError
from manuscript_sync.models.node import DocumentNode


@dataclass
class ServerContext:
    """Shared resources for the MCP server lifetime."""

    store: CacheStore
    service: ReconciliationService
    principal: str | None


def _node_summary(node: DocumentNode, words: int | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": node.id,
        "title": node.title,
        "kind": str(node.kind),
        "parent_id": node.parent_id,
        "order": node.order,
        "status": str(node.status),
        "word_count": node.word_count,
        "external_id": node.external_id,
    }
    if words is not None:
        data["aggregate_word_count"] = words
    return data


# --- Core functions (testable without MCP context) ---


def manuscript_list_projects(ctx: ServerContext) -> dict[str, Any]:
    """List the projects owned by the acting user."""
    if not ctx.principal:
        return {"error": "No acting user configured.", "error_kind": "authorization"}
    projects = ctx.store.list_projects(owner_id=ctx.principal)
    return {"projects": [p.to_dict() for p in projects], "count": len(projects)}


def manuscript_list_tree(
    ctx: ServerContext,
    *,
    project_id: str,
    node_id: str | None = None,
    max_depth: int | None = None,
    output_format: str = "markdown",
) -> dict[str, Any]:
    """Return a project's tree as a markdown outline or nested JSON."""
    try:
        nodes = ctx.service.list_documents(ctx.principal, project_id)
        project = ctx.store.get_project(project_id)
    except ManuscriptError as e:
        return e.to_dict()

    result: dict[str, Any] = {
        "project": project.to_dict(),
        "document_count": len(nodes),
    }
    if output_format == "json":
        index = build_tree_index(nodes)

        def build(node: DocumentNode, depth: int) -> dict[str, Any]:
            entry = _node_summary(node, aggregate_word_count(node.id, index))
            if max_depth is None or depth < max_depth:
                entry["children"] = [build(c, depth + 1) for c in index.children_of(node.id)]
            return entry

        if node_id is not None and node_id not in index.by_id:
            return {"error": f"Document '{node_id}' not found.", "error_kind": "not_found"}
        starts = index.roots if node_id is None else (index.by_id[node_id],)
        result["tree"] = [build(n, 0) for n in starts]
    else:
        result["content"] = render_outline_as_markdown(
            nodes, node_id=node_id, max_depth=max_depth
        )
    return result


def manuscript_create_document(
    ctx: ServerContext,
    *,
    project_id: str,
    title: str,
    kind: str,
    parent_id: str | None = None,
    synopsis: str = "",
) -> dict[str, Any]:
    try:
        result = ctx.service.create_document(
            ctx.principal, project_id, title, kind, parent_id, synopsis
        )
    except ManuscriptError as e:
        return e.to_dict()
    return {"document": result.node.to_dict(), "warnings": list(result.warnings)}


def manuscript_move_document(
    ctx: ServerContext, *, node_id: str, new_parent_id: str | None = None
) -> dict[str, Any]:
    try:
        result = ctx.service.move_document(ctx.principal, node_id, new_parent_id)
    except ManuscriptError as e:
        return e.to_dict()
    return {"document": _node_summary(result.node), "warnings": list(result.warnings)}


def manuscript_update_document(
    ctx: ServerContext, *, node_id: str, fields: dict[str, Any]
) -> dict[str, Any]:
    try:
        result = ctx.service.update_document(ctx.principal, node_id, **fields)
    except ManuscriptError as e:
        return e.to_dict()
    return {"document": result.node.to_dict(), "warnings": list(result.warnings)}


def manuscript_delete_document(
    ctx: ServerContext, *, node_id: str, force: bool = False
) -> dict[str, Any]:
    try:
        result = ctx.service.delete_document(ctx.principal, node_id, force=force)
    except ManuscriptError as e:
        return e.to_dict()
    return {
        "success": True,
        "deleted_count": result.deleted_count,
        "deleted_ids": list(result.deleted_ids),
        "warnings": list(result.warnings),
    }


def manuscript_can_delete(ctx: ServerContext, *, node_id: str) -> dict[str, Any]:
    try:
        result = ctx.service.can_delete(ctx.principal, node_id)
    except ManuscriptError as e:
        return e.to_dict()
    return result.to_dict()


def manuscript_request_sync(ctx: ServerContext, *, project_id: str) -> dict[str, Any]:
    try:
        project = request_sync(ctx.store, ctx.service.external, project_id, ctx.principal)
    except ManuscriptError as e:
        return e.to_dict()
    return {
        "sync_status": str(project.sync_status),
        "last_sync_at": project.last_sync_at,
        "sync_error": project.sync_error,
    }


# --- MCP Server Setup ---


@asynccontextmanager
async def server_lifespan(_server: FastMCP) -> AsyncIterator[ServerContext]:
    """Open the cache and the external store client on startup, close on shutdown."""
    data_dir = resolve_data_directory()
    store = CacheStore.open(data_dir / CACHE_DB_NAME)
    mirror = ExternalMirror.background(MIRROR_WORKERS)
    try:
        service = ReconciliationService(store, ExternalStoreApi(), mirror)
        principal = resolve_principal()
        if principal is None:
            logger.warning("MANUSCRIPT_USER_ID is not set; all mutations will be refused")
        yield ServerContext(store=store, service=service, principal=principal)
    finally:
        mirror.drain(timeout=30)
        mirror.shutdown()
        store.close()


mcp_server = FastMCP(
    "manuscript-sync",
    instructions="""\
A manuscript is a tree of documents. Folders, parts and chapters are containers; scenes,
characters, settings, places, notes and research are leaves and cannot hold children.

## Working with the tree

1. Call manuscript_list_projects_tool, then manuscript_list_tree_tool to see the outline.
2. New documents go under a container; passing a leaf as parent creates a sibling.
3. Before deleting, call manuscript_can_delete_tool. Deleting a non-empty container needs
   force=true and removes the whole subtree.
4. Moves into a leaf or into the node's own subtree are rejected.

Warnings in a result mean the cache was updated but the external store was not; run
manuscript_request_sync_tool later to reconcile.
""",
    lifespan=server_lifespan,
)


def _ctx(mcp_ctx: Context) -> ServerContext:
    return mcp_ctx.request_context.lifespan_context  # type: ignore[return-value]


# --- MCP Tool Wrappers ---


@mcp_server.tool()
async def manuscript_list_projects_tool(ctx: Context) -> dict[str, Any]:
    """List the projects owned by the configured user."""
    return manuscript_list_projects(_ctx(ctx))


@mcp_server.tool()
async def manuscript_list_tree_tool(
    ctx: Context,
    project_id: str,
    node_id: str | None = None,
    max_depth: int | None = None,
    output_format: str = "markdown",
) -> dict[str, Any]:
    """Show a project's document tree with aggregated word counts.

    Args:
        project_id: Project id (or its external root folder ref).
        node_id: Only show this subtree.
        max_depth: Max depth levels (None = unlimited).
        output_format: "markdown" (outline) or "json" (nested).
    """
    return manuscript_list_tree(
        _ctx(ctx),
        project_id=project_id,
        node_id=node_id,
        max_depth=max_depth,
        output_format=output_format,
    )


@mcp_server.tool()
async def manuscript_create_document_tool(
    ctx: Context,
    project_id: str,
    title: str,
    kind: str,
    parent_id: str | None = None,
    synopsis: str = "",
) -> dict[str, Any]:
    """Create a document.

    Args:
        project_id: Project id.
        title: Document title (required).
        kind: folder, part, chapter, scene, character, setting, place, note or research.
        parent_id: Container to create it in; a leaf id creates a sibling of that leaf.
        synopsis: Optional synopsis.
    """
    return manuscript_create_document(
        _ctx(ctx),
        project_id=project_id,
        title=title,
        kind=kind,
        parent_id=parent_id,
        synopsis=synopsis,
    )


@mcp_server.tool()
async def manuscript_move_document_tool(
    ctx: Context, node_id: str, new_parent_id: str | None = None
) -> dict[str, Any]:
    """Move a document under another container (omit new_parent_id for root level)."""
    return manuscript_move_document(_ctx(ctx), node_id=node_id, new_parent_id=new_parent_id)


@mcp_server.tool()
async def manuscript_update_document_tool(
    ctx: Context,
    node_id: str,
    title: str | None = None,
    synopsis: str | None = None,
    status: str | None = None,
    tags: list[str] | None = None,
    include_in_compile: bool | None = None,
) -> dict[str, Any]:
    """Edit a document's metadata. Only the given fields change.

    Args:
        node_id: Document id.
        title: New title.
        synopsis: New synopsis.
        status: draft, review, final or published.
        tags: Replacement tag list.
        include_in_compile: Whether the document is part of the compiled manuscript.
    """
    candidates = {
        "title": title,
        "synopsis": synopsis,
        "status": status,
        "tags": tags,
        "include_in_compile": include_in_compile,
    }
    fields = {k: v for k, v in candidates.items() if v is not None}
    if not fields:
        return {"error": "No fields to update.", "error_kind": "validation"}
    return manuscript_update_document(_ctx(ctx), node_id=node_id, fields=fields)


@mcp_server.tool()
async def manuscript_delete_document_tool(
    ctx: Context, node_id: str, force: bool = False
) -> dict[str, Any]:
    """Delete a document. Non-empty containers need force=true (deletes the subtree)."""
    return manuscript_delete_document(_ctx(ctx), node_id=node_id, force=force)


@mcp_server.tool()
async def manuscript_can_delete_tool(ctx: Context, node_id: str) -> dict[str, Any]:
    """Check whether a document can be deleted without force, listing its children."""
    return manuscript_can_delete(_ctx(ctx), node_id=node_id)


@mcp_server.tool()
async def manuscript_request_sync_tool(ctx: Context, project_id: str) -> dict[str, Any]:
    """Reconcile the cache with the external store and report the sync status."""
    return manuscript_request_sync(_ctx(ctx), project_id=project_id)


def run_mcp_server() -> None:
    """Run the MCP server with stdio transport."""
    from manuscript_sync.logging_config import configure_logging

    configure_logging(verbose=False)
    mcp_server.run(transport="stdio")
