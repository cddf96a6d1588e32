"""CLI for manuscript-sync (projects, outline, sync, cache maintenance, MCP server)."""

import json
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

from manuscript_sync.api import ExternalStoreApi
from manuscript_sync.config import CACHE_DB_NAME, resolve_data_directory, resolve_principal
from manuscript_sync.core.maintenance import cleanup_cache, get_stats
from manuscript_sync.core.reconcile.service import ReconciliationService
from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.core.sync.driver import request_sync
from manuscript_sync.core.tree.index import aggregate_word_count, build_tree_index
from manuscript_sync.core.tree.markdown import render_outline_as_markdown
from manuscript_sync.errors import ManuscriptError
from manuscript_sync.logging_config import configure_logging
from manuscript_sync.models.node import SyncStatus

app = typer.Typer(help="Manuscript sync: manage manuscript trees mirrored to an external store.")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    configure_logging(verbose=verbose)


def _open_store(data_dir: Path | None) -> CacheStore:
    dst = data_dir or resolve_data_directory()
    return CacheStore.open(dst / CACHE_DB_NAME)


def _external() -> ExternalStoreApi:
    try:
        return ExternalStoreApi()
    except RuntimeError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e


def _require_user(user: str | None) -> str:
    principal = user or resolve_principal()
    if not principal:
        logger.error("No user given. Pass --user or set MANUSCRIPT_USER_ID.")
        raise typer.Exit(1)
    return principal


DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", "-d", help="Cache database directory"),
]
UserOption = Annotated[
    str | None,
    typer.Option("--user", "-u", help="Acting user id (default: MANUSCRIPT_USER_ID)"),
]


@app.command(name="init-project")
def init_project(
    name: str = typer.Argument(..., help="Project name"),
    user: UserOption = None,
    root_folder: Annotated[
        str | None,
        typer.Option("--root-folder", "-r", help="Existing external folder ref to adopt"),
    ] = None,
    description: str = typer.Option("", "--description", help="Project description"),
    data_dir: DataDirOption = None,
) -> None:
    """Register a project, creating its root folder in the external store if needed."""
    owner = _require_user(user)
    store = _open_store(data_dir)
    try:
        service = ReconciliationService(store, _external())
        project = service.create_project(
            owner, name, description=description, root_folder_id=root_folder
        )
    except ManuscriptError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e
    finally:
        store.close()
    typer.echo(f"Created project '{project.name}' [id={project.id}]")
    typer.echo(f"  root folder: {project.root_folder_id}")


@app.command()
def projects(
    user: UserOption = None,
    data_dir: DataDirOption = None,
) -> None:
    """List cached projects."""
    store = _open_store(data_dir)
    try:
        rows = store.list_projects(owner_id=user)
    finally:
        store.close()
    typer.echo(f"{len(rows)} projects:\n")
    for project in rows:
        status = str(project.sync_status)
        if project.sync_status == SyncStatus.ERROR and project.sync_error:
            status = f"{status}: {project.sync_error}"
        typer.echo(f"  {project.name} ({status})  [id={project.id}]")


@app.command(name="delete-project")
def delete_project(
    project_id: str = typer.Argument(..., help="Project id"),
    user: UserOption = None,
    data_dir: DataDirOption = None,
) -> None:
    """Delete a project with all its documents, here and in the external store."""
    principal = _require_user(user)
    store = _open_store(data_dir)
    try:
        result = ReconciliationService(store, _external()).delete_project(principal, project_id)
    except ManuscriptError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e
    finally:
        store.close()
    typer.echo(f"Deleted project with {result.deleted_count} documents")
    for warning in result.warnings:
        typer.echo(f"  warning: {warning}")


@app.command()
def tree(
    project_id: str = typer.Argument(..., help="Project id or root folder ref"),
    node_id: Annotated[
        str | None,
        typer.Option("--node", "-n", help="Only show the subtree below this document"),
    ] = None,
    max_depth: Annotated[
        int | None,
        typer.Option("--max-depth", "-m", help="Max depth levels to render"),
    ] = None,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    data_dir: DataDirOption = None,
) -> None:
    """Show a project's document tree with aggregated word counts."""
    store = _open_store(data_dir)
    try:
        project = store.get_project(project_id)
        nodes = store.list_nodes(project.id)
    except ManuscriptError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e
    finally:
        store.close()

    if output_json:
        index = build_tree_index(nodes)
        data = {
            "project": project.to_dict(),
            "documents": [
                {**n.to_dict(), "aggregate_word_count": aggregate_word_count(n.id, index)}
                for n in nodes
            ],
        }
        typer.echo(json.dumps(data, indent=2))
        return

    md = render_outline_as_markdown(nodes, node_id=node_id, max_depth=max_depth)
    if node_id is not None and not md:
        typer.echo(f"Document '{node_id}' not found in project.")
        raise typer.Exit(1)
    typer.echo(f"# {project.name}\n")
    typer.echo(md or "(empty)")


@app.command()
def sync(
    project_id: str = typer.Argument(..., help="Project id or root folder ref"),
    user: UserOption = None,
    data_dir: DataDirOption = None,
) -> None:
    """Reconcile the cache with the external store."""
    principal = _require_user(user)
    store = _open_store(data_dir)
    try:
        project = request_sync(store, _external(), project_id, principal)
    except ManuscriptError as e:
        logger.error("{}", e)
        raise typer.Exit(1) from e
    finally:
        store.close()

    if project.sync_status == SyncStatus.ERROR:
        logger.error("Sync failed: {}", project.sync_error)
        raise typer.Exit(1)
    typer.echo(f"Project '{project.name}' is {project.sync_status}")


@app.command()
def stats(data_dir: DataDirOption = None) -> None:
    """Show cache totals and entries that cannot be reconciled."""
    store = _open_store(data_dir)
    try:
        result = get_stats(store)
    finally:
        store.close()
    typer.echo(f"Projects:                      {result.projects}")
    typer.echo(f"Documents:                     {result.documents}")
    typer.echo(f"Projects without root folder:  {result.projects_without_folder}")
    typer.echo(f"Documents without external id: {result.documents_without_external_id}")
    typer.echo(f"Orphaned documents:            {result.orphaned_documents}")
    if result.needs_cleanup:
        typer.echo("\nRun 'manuscript-sync cleanup' to remove them.")


@app.command()
def cleanup(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    data_dir: DataDirOption = None,
) -> None:
    """Remove cache entries that can never be reconciled with the external store."""
    store = _open_store(data_dir)
    try:
        before = get_stats(store)
        if not before.needs_cleanup:
            typer.echo("Nothing to clean up.")
            return
        if not yes and not typer.confirm("Delete unreconcilable cache entries?"):
            raise typer.Exit(1)
        report = cleanup_cache(store)
    finally:
        store.close()
    typer.echo(
        f"Removed {report.projects_removed} projects and {report.documents_removed} documents"
    )


@app.command()
def serve() -> None:
    """Start the MCP server (stdio transport)."""
    from manuscript_sync.mcp.server import run_mcp_server

    run_mcp_server()
