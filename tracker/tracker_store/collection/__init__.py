"""Entity collections with id deduplication and optimistic versioning."""

from .store import (
    DELETED_AT,
    INITIATIVES_PATH,
    USERS_PATH,
    CollectionStore,
    SingletonDocument,
    SyncReport,
    dedupe_by_id,
)
from .versioning import ConflictError, EntityNotFoundError, VersionGate, version_of

__all__ = [
    "DELETED_AT",
    "INITIATIVES_PATH",
    "USERS_PATH",
    "CollectionStore",
    "ConflictError",
    "EntityNotFoundError",
    "SingletonDocument",
    "SyncReport",
    "VersionGate",
    "dedupe_by_id",
    "version_of",
]
