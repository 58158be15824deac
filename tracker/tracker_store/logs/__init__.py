"""Append-only audit, activity and error logs."""

from .bounded import CHANGELOG_PATH, BoundedLog
from .partitioned import (
    ACTIVITY,
    CATEGORIES,
    ERRORS,
    AppendOnlyLog,
    date_from_path,
    parse_timestamp,
    retention_sweep,
)

__all__ = [
    "ACTIVITY",
    "CATEGORIES",
    "CHANGELOG_PATH",
    "ERRORS",
    "AppendOnlyLog",
    "BoundedLog",
    "date_from_path",
    "parse_timestamp",
    "retention_sweep",
]
