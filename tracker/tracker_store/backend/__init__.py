"""
Document backend abstraction for Tracker Store.

This module provides a pluggable backend interface supporting:
- S3-compatible object storage (production blob store)
- A spreadsheet-like tabular store (SQLite, no unique-key enforcement)
- In-memory (for testing)

Invariants:
    - Absence is reported as None, never raised
    - Writes overwrite whole documents
    - No backend offers transactions or uniqueness; stores compensate

How to change safely:
    - New backends must implement the DocumentBackend protocol
    - Retryability lives on the raised error type
"""

from .base import (
    DocumentBackend,
    DocumentValidationError,
    ObjectInfo,
    StorageConnectionError,
    StorageError,
    TransientStorageError,
    create_backend,
)
from .memory import InMemoryBackend
from .s3 import S3Backend
from .sqlite_table import SqliteTableBackend, TabularRow

__all__ = [
    # Protocol and types
    "DocumentBackend",
    "ObjectInfo",
    "StorageError",
    "StorageConnectionError",
    "TransientStorageError",
    "DocumentValidationError",
    # Factory
    "create_backend",
    # Implementations
    "S3Backend",
    "SqliteTableBackend",
    "TabularRow",
    "InMemoryBackend",
]
