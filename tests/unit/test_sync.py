"""Tests for the full reconciliation pass."""

import threading

import pytest

from manuscript_sync.core.reconcile.service import ReconciliationService
from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.core.sync.driver import SyncDriver, request_sync
from manuscript_sync.errors import AuthorizationError, ExternalStoreError, ValidationError
from manuscript_sync.models.node import DocumentKind, DocumentNode, Project, SyncStatus
from tests.unit.fakes import OWNER, PROJECT_ID, ROOT_REF, FakeExternalStore


def _titles(store: CacheStore) -> dict[str, DocumentNode]:
    return {n.title: n for n in store.list_nodes(PROJECT_ID)}


def test_pass_creates_nodes_parents_first(
    store: CacheStore, external: FakeExternalStore, project: Project
) -> None:
    # Listed child-first on purpose.
    external.add_document("e-scene", "Arrival", "scene", "e-ch", order=0)
    external.add_document("e-ch", "Chapter 1", "chapter", "e-part")
    external.add_document("e-part", "Part One", "part", ROOT_REF)

    report = SyncDriver(store, external).run(PROJECT_ID)

    assert report.created == 3
    nodes = _titles(store)
    assert nodes["Part One"].parent_id is None
    assert nodes["Chapter 1"].parent_id == nodes["Part One"].id
    assert nodes["Arrival"].parent_id == nodes["Chapter 1"].id
    assert nodes["Arrival"].external_id == "e-scene"
    assert nodes["Arrival"].include_in_compile


def test_pass_sets_synced_status(
    store: CacheStore, external: FakeExternalStore, project: Project
) -> None:
    assert store.get_project(PROJECT_ID).sync_status == SyncStatus.NEVER
    SyncDriver(store, external).run(PROJECT_ID)
    synced = store.get_project(PROJECT_ID)
    assert synced.sync_status == SyncStatus.SYNCED
    assert synced.last_sync_at is not None
    assert synced.sync_error is None


def test_pass_overwrites_descriptive_fields_but_keeps_content(
    service: ReconciliationService,
    store: CacheStore,
    external: FakeExternalStore,
    seeded: dict[str, DocumentNode],
) -> None:
    opening = seeded["Opening"]
    service.update_document(OWNER, opening.id, content="Once upon a time", word_count=4)
    node = store.get_node(opening.id)
    assert node is not None and node.external_id
    external.add_document(
        node.external_id, "Cold Open", "scene", external.documents[node.external_id].parent_ref,
        order=5, synopsis="Rain.",
    )

    report = SyncDriver(store, external).run(PROJECT_ID)

    assert report.updated == 1
    synced = store.get_node(opening.id)
    assert synced is not None
    assert synced.title == "Cold Open"
    assert synced.order == 5
    assert synced.synopsis == "Rain."
    assert synced.content == "Once upon a time"
    assert synced.word_count == 4


def test_pass_deletes_nodes_gone_from_external_store(
    store: CacheStore, external: FakeExternalStore, seeded: dict[str, DocumentNode]
) -> None:
    storm = store.get_node(seeded["Storm"].id)
    assert storm is not None and storm.external_id
    del external.documents[storm.external_id]

    report = SyncDriver(store, external).run(PROJECT_ID)

    assert report.deleted == 1
    assert store.get_node(storm.id) is None


def test_surviving_child_of_deleted_node_moves_to_root(
    store: CacheStore, external: FakeExternalStore, seeded: dict[str, DocumentNode]
) -> None:
    characters = store.get_node(seeded["Characters"].id)
    assert characters is not None and characters.external_id
    ada_ref = store.get_node(seeded["Ada"].id).external_id  # type: ignore[union-attr]
    external.update_document(ROOT_REF, ada_ref, {"parent": ROOT_REF})
    del external.documents[characters.external_id]

    report = SyncDriver(store, external).run(PROJECT_ID)

    ada = store.get_node(seeded["Ada"].id)
    assert ada is not None
    assert ada.parent_id is None
    assert report.detached == 1
    assert any("Ada" in w for w in report.warnings)


def test_second_pass_leaves_rows_identical(
    store: CacheStore, external: FakeExternalStore, seeded: dict[str, DocumentNode]
) -> None:
    external.add_document("e-new", "Epilogue", "scene", ROOT_REF, order=9)
    driver = SyncDriver(store, external)
    driver.run(PROJECT_ID)
    first = store.list_nodes(PROJECT_ID)

    report = driver.run(PROJECT_ID)

    assert store.list_nodes(PROJECT_ID) == first
    assert not report.changed


def test_pass_never_moves_existing_nodes(
    store: CacheStore, external: FakeExternalStore, seeded: dict[str, DocumentNode]
) -> None:
    storm = store.get_node(seeded["Storm"].id)
    characters = store.get_node(seeded["Characters"].id)
    assert storm is not None and characters is not None and storm.external_id
    external.update_document(ROOT_REF, storm.external_id, {"parent": characters.external_id})

    SyncDriver(store, external).run(PROJECT_ID)

    assert store.get_node(storm.id).parent_id == seeded["Chapter 1"].id  # type: ignore[union-attr]


def test_kind_demotion_with_children_is_skipped(
    store: CacheStore, external: FakeExternalStore, seeded: dict[str, DocumentNode]
) -> None:
    chapter = store.get_node(seeded["Chapter 1"].id)
    assert chapter is not None and chapter.external_id
    external.update_document(ROOT_REF, chapter.external_id, {"kind": "scene"})

    report = SyncDriver(store, external).run(PROJECT_ID)

    assert store.get_node(chapter.id).kind == DocumentKind.CHAPTER  # type: ignore[union-attr]
    assert any("Chapter 1" in w for w in report.warnings)


def test_new_document_under_leaf_is_placed_at_root(
    store: CacheStore, external: FakeExternalStore, seeded: dict[str, DocumentNode]
) -> None:
    storm = store.get_node(seeded["Storm"].id)
    assert storm is not None and storm.external_id
    external.add_document("e-x", "Misfiled", "note", storm.external_id)

    report = SyncDriver(store, external).run(PROJECT_ID)

    assert _titles(store)["Misfiled"].parent_id is None
    assert report.warnings


def test_unmirrored_nodes_are_left_alone(
    service: ReconciliationService,
    store: CacheStore,
    external: FakeExternalStore,
    seeded: dict[str, DocumentNode],
) -> None:
    external.failing.add("create_leaf_document")
    pending = service.create_document(OWNER, PROJECT_ID, "Pending", "note").node
    external.failing.clear()

    report = SyncDriver(store, external).run(PROJECT_ID)

    assert report.unmirrored == 1
    assert store.get_node(pending.id) is not None


def test_failed_pass_sets_error_status(
    store: CacheStore, external: FakeExternalStore, project: Project
) -> None:
    external.failing.add("list_documents")

    with pytest.raises(ExternalStoreError):
        SyncDriver(store, external).run(PROJECT_ID)

    failed = store.get_project(PROJECT_ID)
    assert failed.sync_status == SyncStatus.ERROR
    assert failed.sync_error is not None
    assert "list_documents" in failed.sync_error


def test_request_sync_reports_failure_as_status(
    store: CacheStore, external: FakeExternalStore, project: Project
) -> None:
    external.failing.add("get_project_metadata")
    result = request_sync(store, external, PROJECT_ID, OWNER)
    assert result.sync_status == SyncStatus.ERROR

    external.failing.clear()
    result = request_sync(store, external, PROJECT_ID, OWNER)
    assert result.sync_status == SyncStatus.SYNCED
    assert result.sync_error is None


def test_request_sync_requires_owner(
    store: CacheStore, external: FakeExternalStore, project: Project
) -> None:
    with pytest.raises(AuthorizationError):
        request_sync(store, external, PROJECT_ID, "mallory")
    assert store.get_project(PROJECT_ID).sync_status == SyncStatus.NEVER


def test_demotion_and_create_under_the_same_node_are_serialized(
    service: ReconciliationService,
    store: CacheStore,
    external: FakeExternalStore,
    seeded: dict[str, DocumentNode],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    act = service.create_document(OWNER, PROJECT_ID, "Act", "folder").node
    act_ref = store.get_node(act.id).external_id  # type: ignore[union-attr]
    external.update_document(ROOT_REF, act_ref, {"kind": "scene"})

    errors: list[Exception] = []

    def create_under_act() -> None:
        try:
            service.create_document(OWNER, PROJECT_ID, "Late", "scene", act.id)
        except ValidationError as e:
            errors.append(e)

    creator = threading.Thread(target=create_under_act)
    real_find_children = store.find_children

    def find_then_create(parent_id: str) -> list[DocumentNode]:
        children = real_find_children(parent_id)
        if parent_id == act.id and creator.ident is None:
            creator.start()
            creator.join(timeout=0.2)
        return children

    monkeypatch.setattr(store, "find_children", find_then_create)
    SyncDriver(store, external).run(PROJECT_ID)
    creator.join(timeout=5)

    assert store.get_node(act.id).kind == DocumentKind.SCENE  # type: ignore[union-attr]
    assert real_find_children(act.id) == []
    assert len(errors) == 1
