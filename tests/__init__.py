"""
Tracker Store Test Suite.

This package contains:
- unit/: Unit tests (in-memory and temporary SQLite backends)
- integration/: HTTP layer and tools over composed stores
"""
