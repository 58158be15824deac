"""
Blob module for Tracker Store.

BlobStore loads and saves whole JSON documents at named paths, retrying
transient backend failures with exponential backoff.

Invariants:
    - Absence is not an error; every read declares a typed default
    - Only transient failures are retried
"""

from .result import StoreResult
from .retry import backoff_delays, is_retryable, retry_with_backoff
from .store import NO_CACHE, PRIVATE_NO_STORE, BlobStore

__all__ = [
    "BlobStore",
    "StoreResult",
    "retry_with_backoff",
    "is_retryable",
    "backoff_delays",
    "NO_CACHE",
    "PRIVATE_NO_STORE",
]
