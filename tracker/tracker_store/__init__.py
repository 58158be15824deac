"""
Tracker Store - persistence and concurrency core for the initiative tracker.

This package gives document-store-like guarantees on top of backends that
natively offer none of them:
- A blob store (S3-compatible, whole-object overwrite, prefix listing)
- A tabular store (header row + per-row records, no unique-key constraint)

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌─────────────────────┐
    │  HTTP API   │────▶│  Stores      │────▶│  BlobStore (retry)  │
    │  (aiohttp)  │     │  collection  │     └──────────┬──────────┘
    └─────────────┘     │  logs        │                │
                        │  snapshots   │                ▼
                        │  notif.(lock)│     ┌─────────────────────┐
                        └──────────────┘     │  DocumentBackend    │
                                             │  s3 | sqlite | mem  │
                                             └─────────────────────┘

Invariants:
    - Absence of a document is never an error; reads declare a default
    - Entity ids are unique within a collection at every observation point
      (enforced by dedup logic, never by the backend)
    - Read-modify-write cycles on the same key are serialized in-process
    - Successful updates through the version gate bump version by one

How to change safely:
    - Paths under data/, logs/, snapshots/, reports/, support/ are the wire
      contract with stored data; never rename them in place
    - New backends must implement the DocumentBackend protocol
    - Keep the availability-first policy: failed writes return a failed
      StoreResult, failed reads degrade to the declared default

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
