"""Tests for the manuscript-sync CLI."""

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from manuscript_sync.cli import app
from manuscript_sync.config import CACHE_DB_NAME
from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.models.node import Project, SyncStatus
from tests.unit.fakes import OWNER, PROJECT_ID, ROOT_REF, FakeExternalStore, make_node

runner = CliRunner()


@pytest.fixture
def fake_external() -> Iterator[FakeExternalStore]:
    """Replace the HTTP client with an in-memory external store."""
    fake = FakeExternalStore()
    fake.add_root(ROOT_REF, "Novel")
    with patch("manuscript_sync.cli.ExternalStoreApi", return_value=fake):
        yield fake


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """A data directory whose cache holds one project with a small tree."""
    cache = CacheStore.open(tmp_path / CACHE_DB_NAME)
    try:
        cache.insert_project(
            Project(id=PROJECT_ID, name="Novel", owner_id=OWNER, root_folder_id=ROOT_REF, created=1)
        )
        cache.insert_node(make_node("part", "part", title="Part One", external_id="e-part"))
        cache.insert_node(
            make_node("s1", "scene", "part", title="Dock", word_count=120, external_id="e-s1")
        )
    finally:
        cache.close()
    return tmp_path


def _project(data_dir: Path) -> Project:
    cache = CacheStore.open(data_dir / CACHE_DB_NAME)
    try:
        return cache.get_project(PROJECT_ID)
    finally:
        cache.close()


def test_init_project_creates_root_folder(
    tmp_path: Path, fake_external: FakeExternalStore
) -> None:
    result = runner.invoke(
        app, ["init-project", "Memoir", "--user", "bob", "--data-dir", str(tmp_path)]
    )
    assert result.exit_code == 0, result.output
    assert "Created project 'Memoir'" in result.output
    assert "Memoir" in fake_external.roots.values()


def test_init_project_without_user_fails(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_external: FakeExternalStore
) -> None:
    monkeypatch.delenv("MANUSCRIPT_USER_ID", raising=False)
    result = runner.invoke(app, ["init-project", "Memoir", "--data-dir", str(tmp_path)])
    assert result.exit_code == 1
    assert fake_external.calls == []


def test_init_project_user_from_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_external: FakeExternalStore
) -> None:
    monkeypatch.setenv("MANUSCRIPT_USER_ID", "carol")
    result = runner.invoke(
        app,
        ["init-project", "Essays", "--root-folder", "existing", "--data-dir", str(tmp_path)],
    )
    assert result.exit_code == 0, result.output
    assert fake_external.calls == []


def test_projects_lists_cached_projects(data_dir: Path) -> None:
    result = runner.invoke(app, ["projects", "--data-dir", str(data_dir)])
    assert result.exit_code == 0
    assert "Novel (never)" in result.output


def test_tree_renders_outline(data_dir: Path) -> None:
    result = runner.invoke(app, ["tree", PROJECT_ID, "--data-dir", str(data_dir)])
    assert result.exit_code == 0, result.output
    assert "# Novel" in result.output
    assert "- Part One (part, draft, 120 words)" in result.output
    assert "    - Dock (scene, draft, 120 words)" in result.output


def test_tree_json_includes_aggregates(data_dir: Path) -> None:
    result = runner.invoke(app, ["tree", ROOT_REF, "--json", "--data-dir", str(data_dir)])
    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    by_id = {d["id"]: d for d in data["documents"]}
    assert by_id["part"]["aggregate_word_count"] == 120
    assert data["project"]["id"] == PROJECT_ID


def test_tree_unknown_project_fails(data_dir: Path) -> None:
    result = runner.invoke(app, ["tree", "nope", "--data-dir", str(data_dir)])
    assert result.exit_code == 1


def test_sync_reconciles_cache(data_dir: Path, fake_external: FakeExternalStore) -> None:
    fake_external.add_document("e-part", "Part One", "part", ROOT_REF)
    fake_external.add_document("e-new", "Interlude", "scene", ROOT_REF, order=3)

    result = runner.invoke(app, ["sync", PROJECT_ID, "-u", OWNER, "--data-dir", str(data_dir)])

    assert result.exit_code == 0, result.output
    assert "is synced" in result.output
    assert _project(data_dir).sync_status == SyncStatus.SYNCED


def test_sync_failure_exits_with_error(
    data_dir: Path, fake_external: FakeExternalStore
) -> None:
    fake_external.failing.add("list_documents")
    result = runner.invoke(app, ["sync", PROJECT_ID, "-u", OWNER, "--data-dir", str(data_dir)])
    assert result.exit_code == 1
    assert _project(data_dir).sync_status == SyncStatus.ERROR


def test_sync_by_other_user_is_refused(
    data_dir: Path, fake_external: FakeExternalStore
) -> None:
    result = runner.invoke(
        app, ["sync", PROJECT_ID, "-u", "mallory", "--data-dir", str(data_dir)]
    )
    assert result.exit_code == 1
    assert fake_external.calls == []


def test_stats_and_cleanup(data_dir: Path) -> None:
    cache = CacheStore.open(data_dir / CACHE_DB_NAME)
    try:
        cache.insert_node(make_node("loose", "note", "gone", external_id="e-loose"))
    finally:
        cache.close()

    stats = runner.invoke(app, ["stats", "--data-dir", str(data_dir)])
    assert stats.exit_code == 0
    assert "Orphaned documents:            1" in stats.output

    cleanup = runner.invoke(app, ["cleanup", "--yes", "--data-dir", str(data_dir)])
    assert cleanup.exit_code == 0, cleanup.output
    assert "Removed 0 projects and 1 documents" in cleanup.output

    again = runner.invoke(app, ["cleanup", "--yes", "--data-dir", str(data_dir)])
    assert "Nothing to clean up." in again.output


def test_delete_project_removes_it(data_dir: Path, fake_external: FakeExternalStore) -> None:
    result = runner.invoke(
        app, ["delete-project", PROJECT_ID, "-u", OWNER, "--data-dir", str(data_dir)]
    )
    assert result.exit_code == 0, result.output
    assert "2 documents" in result.output
    assert ROOT_REF not in fake_external.roots
