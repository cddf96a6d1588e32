"""In-process remote: lets an OptimisticClient talk to a ReconciliationService."""

import asyncio

from manuscript_sync.core.reconcile.service import ReconciliationService
from manuscript_sync.core.sync.driver import request_sync
from manuscript_sync.models.node import (
    CanDeleteResult,
    DeleteResult,
    DocumentKind,
    DocumentNode,
    Project,
)


class ServiceRemote:
    """Runs the blocking service calls in a worker thread on behalf of one principal."""

    def __init__(self, service: ReconciliationService, principal: str) -> None:
        self.service = service
        self.principal = principal

    async def create_document(
        self,
        project_id: str,
        title: str,
        kind: DocumentKind,
        parent_id: str | None,
        synopsis: str = "",
    ) -> DocumentNode:
        result = await asyncio.to_thread(
            self.service.create_document,
            self.principal,
            project_id,
            title,
            kind,
            parent_id,
            synopsis,
        )
        return result.node

    async def move_document(self, node_id: str, new_parent_id: str | None) -> DocumentNode:
        result = await asyncio.to_thread(
            self.service.move_document, self.principal, node_id, new_parent_id
        )
        return result.node

    async def delete_document(self, node_id: str, force: bool = False) -> DeleteResult:
        return await asyncio.to_thread(
            lambda: self.service.delete_document(self.principal, node_id, force=force)
        )

    async def can_delete(self, node_id: str) -> CanDeleteResult:
        return await asyncio.to_thread(self.service.can_delete, self.principal, node_id)

    async def request_sync(self, project_id: str) -> Project:
        return await asyncio.to_thread(
            request_sync, self.service.store, self.service.external, project_id, self.principal
        )
