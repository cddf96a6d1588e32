"""Protocols for dependency injection between the engine and its collaborators."""

from typing import Any, Protocol, runtime_checkable

from manuscript_sync.models.node import (
    CanDeleteResult,
    DeleteResult,
    DocumentKind,
    DocumentNode,
    ExternalDocument,
    Project,
)


@runtime_checkable
class ExternalStoreProtocol(Protocol):
    """Protocol for the external authoritative document store."""

    def create_container(self, name: str, parent_ref: str | None) -> str:
        """Create a folder-like container and return its ref."""
        ...

    def create_leaf_document(self, name: str, parent_ref: str | None, kind: DocumentKind) -> str:
        """Create a content document and return its ref."""
        ...

    def list_documents(self, project_ref: str) -> list[ExternalDocument]:
        """List every document below the project's root folder."""
        ...

    def update_document(self, project_ref: str, ref: str, fields: dict[str, Any]) -> None:
        """Update name, parent, order or synopsis of a document."""
        ...

    def delete_document(self, project_ref: str, ref: str) -> None:
        """Delete a document (or folder) by ref."""
        ...

    def get_project_metadata(self, project_ref: str) -> dict[str, Any]:
        """Return the project's metadata record."""
        ...


@runtime_checkable
class RemoteProtocol(Protocol):
    """Protocol for the server the optimistic client talks to."""

    async def create_document(
        self,
        project_id: str,
        title: str,
        kind: DocumentKind,
        parent_id: str | None,
        synopsis: str = "",
    ) -> DocumentNode:
        ...

    async def move_document(self, node_id: str, new_parent_id: str | None) -> DocumentNode:
        ...

    async def delete_document(self, node_id: str, force: bool = False) -> DeleteResult:
        ...

    async def can_delete(self, node_id: str) -> CanDeleteResult:
        ...

    async def request_sync(self, project_id: str) -> Project:
        ...
