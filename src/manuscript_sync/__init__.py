"""Manuscript document tree consistency and external store synchronization."""

from manuscript_sync.api import ExternalStoreApi
from manuscript_sync.client.optimistic import OptimisticClient
from manuscript_sync.core.reconcile.service import ReconciliationService
from manuscript_sync.core.store.cache import CacheStore
from manuscript_sync.core.sync.driver import SyncDriver
from manuscript_sync.protocols import ExternalStoreProtocol, RemoteProtocol

__all__ = [
    "CacheStore",
    "ExternalStoreApi",
    "ExternalStoreProtocol",
    "OptimisticClient",
    "ReconciliationService",
    "RemoteProtocol",
    "SyncDriver",
]
