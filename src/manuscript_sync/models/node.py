"""Domain models for the manuscript document tree."""

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class DocumentKind(StrEnum):
    FOLDER = "folder"
    PART = "part"
    CHAPTER = "chapter"
    SCENE = "scene"
    CHARACTER = "character"
    SETTING = "setting"
    PLACE = "place"
    NOTE = "note"
    RESEARCH = "research"

    @property
    def is_container(self) -> bool:
        return self in CONTAINER_KINDS


CONTAINER_KINDS: frozenset[DocumentKind] = frozenset(
    {DocumentKind.FOLDER, DocumentKind.PART, DocumentKind.CHAPTER}
)


class DocumentStatus(StrEnum):
    DRAFT = "draft"
    REVIEW = "review"
    FINAL = "final"
    PUBLISHED = "published"


class SyncStatus(StrEnum):
    NEVER = "never"
    SYNCED = "synced"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass(frozen=True)
class DocumentNode:
    """A single manuscript unit in a project tree."""

    id: str
    project_id: str
    parent_id: str | None
    kind: DocumentKind
    title: str
    order: int
    created: int
    updated: int
    last_edited: int | None = None
    synopsis: str = ""
    tags: tuple[str, ...] = ()
    status: DocumentStatus = DocumentStatus.DRAFT
    include_in_compile: bool = False
    word_count: int = 0
    content: str = ""
    external_id: str | None = None

    @property
    def is_container(self) -> bool:
        return self.kind.is_container

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = str(self.kind)
        data["status"] = str(self.status)
        data["tags"] = list(self.tags)
        return data


@dataclass(frozen=True)
class Project:
    """A project owning one document forest."""

    id: str
    name: str
    owner_id: str
    root_folder_id: str | None
    created: int
    description: str = ""
    sync_status: SyncStatus = SyncStatus.NEVER
    last_sync_at: int | None = None
    sync_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["sync_status"] = str(self.sync_status)
        return data


@dataclass(frozen=True)
class ChildSummary:
    """Shallow listing entry for a direct child."""

    node_id: str
    title: str
    kind: DocumentKind

    def to_dict(self) -> dict[str, str]:
        return {"id": self.node_id, "title": self.title, "kind": str(self.kind)}


@dataclass(frozen=True)
class CanDeleteResult:
    """Whether a node may be deleted without ``force``."""

    can_delete: bool
    child_count: int
    children: tuple[ChildSummary, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_delete": self.can_delete,
            "child_count": self.child_count,
            "children": [c.to_dict() for c in self.children],
        }


@dataclass(frozen=True)
class ExternalDocument:
    """One entry of the external store's document listing."""

    ref: str
    name: str
    kind: DocumentKind
    parent_ref: str | None
    order: int = 0
    synopsis: str = ""
    modified: int | None = None


@dataclass(frozen=True)
class MutationResult:
    """Canonical node after a server-side mutation, plus non-fatal mirror warnings."""

    node: DocumentNode
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class DeleteResult:
    """Summary of a (possibly cascading) delete."""

    deleted_count: int
    deleted_ids: tuple[str, ...] = ()
    warnings: tuple[str, ...] = field(default=())
