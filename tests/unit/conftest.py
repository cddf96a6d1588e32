"""Shared test fixtures."""

from collections.abc import Iterator

import pytest

from manuscript_sync.core.reconcile.service import ReconciliationService
from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.models.node import DocumentNode, Project
from tests.unit.fakes import OWNER, PROJECT_ID, ROOT_REF, FakeExternalStore


@pytest.fixture
def store() -> Iterator[CacheStore]:
    """Return an empty in-memory cache store."""
    cache = CacheStore.open(":memory:")
    yield cache
    cache.close()


@pytest.fixture
def external() -> FakeExternalStore:
    """Return a fake external store holding the project's root folder."""
    fake = FakeExternalStore()
    fake.add_root(ROOT_REF, "Novel")
    return fake


@pytest.fixture
def project(store: CacheStore) -> Project:
    """Insert the test project, owned by OWNER and anchored at ROOT_REF."""
    return store.insert_project(
        Project(
            id=PROJECT_ID,
            name="Novel",
            owner_id=OWNER,
            root_folder_id=ROOT_REF,
            created=1000,
        )
    )


@pytest.fixture
def service(
    store: CacheStore, external: FakeExternalStore, project: Project
) -> ReconciliationService:
    """Return a service that mirrors inline into the fake external store."""
    return ReconciliationService(store, external)


@pytest.fixture
def seeded(service: ReconciliationService) -> dict[str, DocumentNode]:
    """Create a small manuscript through the service and return nodes by title.

    Draft (folder)
        Chapter 1 (chapter)
            Opening (scene)
            Storm (scene)
    Characters (folder)
        Ada (character)
    """
    nodes: dict[str, DocumentNode] = {}

    def create(title: str, kind: str, parent: str | None = None) -> None:
        parent_id = nodes[parent].id if parent else None
        result = service.create_document(OWNER, PROJECT_ID, title, kind, parent_id)
        nodes[title] = result.node

    create("Draft", "folder")
    create("Chapter 1", "chapter", "Draft")
    create("Opening", "scene", "Chapter 1")
    create("Storm", "scene", "Chapter 1")
    create("Characters", "folder")
    create("Ada", "character", "Characters")
    return nodes
