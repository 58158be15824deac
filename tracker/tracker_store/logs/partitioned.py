"""
Date-partitioned append-only logs (error and activity records).

Layout:
    logs/<category>/<YYYY>/<MM>/<DD>/<category>.json

Each file holds a JSON array for one calendar day (UTC). The day is taken
from each record's own ``timestamp``, never from the wall clock at write
time, so a late-arriving record lands in the partition it belongs to.

Invariants:
    - Appends to one partition are serialized by the injected lock
    - A missing day is skipped on query, not an error
    - When cap > 0 a partition keeps only its newest cap records

Retention:
    retention_sweep() lists every file under the log namespace and deletes
    files dated before the cutoff. Cost is linear in the number of stored
    files; acceptable for low-volume internal logs.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any

from ..blob.result import StoreResult
from ..blob.store import NO_CACHE, BlobStore
from ..locking import KeyedMutationLock

logger = logging.getLogger(__name__)

LOG_ROOT = "logs/"
ERRORS = "errors"
ACTIVITY = "activity"
CATEGORIES = (ERRORS, ACTIVITY)

DEFAULT_QUERY_DAYS = 7

_PATH_DATE = re.compile(r"(\d{4})/(\d{2})/(\d{2})")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def date_from_path(path: str) -> date | None:
    """Partition date embedded in a log path, e.g. logs/errors/2024/12/19/errors.json."""
    match = _PATH_DATE.search(path)
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _sort_key(record: dict[str, Any]) -> datetime:
    return parse_timestamp(record.get("timestamp")) or datetime.min.replace(tzinfo=timezone.utc)


class AppendOnlyLog:
    """One log category partitioned by day.

    Attributes:
        blob: Document store
        category: Namespace under logs/ ("errors", "activity")
        lock: Per-key lock registry; keys are partition paths
        cap: Maximum records per partition file, 0 for unbounded

    Example:
        >>> errors = AppendOnlyLog(blob, ERRORS, lock)
        >>> await errors.append([{"severity": "error", "message": "boom",
        ...                       "timestamp": "2024-12-19T10:00:00Z"}])
        >>> recent = await errors.query_range(severity="error")
    """

    def __init__(
        self,
        blob: BlobStore,
        category: str,
        lock: KeyedMutationLock,
        cap: int = 0,
    ) -> None:
        self.blob = blob
        self.category = category
        self.lock = lock
        self.cap = cap

    @property
    def prefix(self) -> str:
        return f"{LOG_ROOT}{self.category}/"

    def partition_path(self, day: date) -> str:
        return f"{self.prefix}{day:%Y/%m/%d}/{self.category}.json"

    async def append(self, records: list[dict[str, Any]]) -> StoreResult:
        """Append records to the partitions of their own timestamps.

        Records without a parseable timestamp are stamped with the current
        time. value is the number of records written.
        """
        by_path: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for record in records:
            stamped = parse_timestamp(record.get("timestamp"))
            if stamped is None:
                stamped = datetime.now(timezone.utc)
                record = {**record, "timestamp": stamped.isoformat().replace("+00:00", "Z")}
            by_path[self.partition_path(stamped.date())].append(record)

        written = 0
        failures: list[str] = []
        for path, new_records in by_path.items():
            async with self.lock.hold(path):
                current = await self.blob.read(path, [])
                if not current.ok and not current.corrupt:
                    failures.append(current.reason or path)
                    continue
                entries = current.value + new_records
                if self.cap and len(entries) > self.cap:
                    entries = entries[-self.cap :]
                result = await self.blob.save(path, entries, cache_control=NO_CACHE)
            if result.ok:
                written += len(new_records)
            else:
                failures.append(result.reason or path)

        if failures:
            return StoreResult.failure("; ".join(failures), value=written)
        return StoreResult.success(written)

    async def query_range(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        **filters: Any,
    ) -> list[dict[str, Any]]:
        """Records between start and end, newest first.

        Args:
            start: Defaults to seven days before end
            end: Defaults to now
            **filters: Field equality filters; None values are ignored
        """
        end = end or datetime.now(timezone.utc)
        start = start or end - timedelta(days=DEFAULT_QUERY_DAYS)
        day = parse_timestamp(start).date()
        last = parse_timestamp(end).date()

        records: list[dict[str, Any]] = []
        while day <= last:
            result = await self.blob.read(self.partition_path(day), [])
            if not result.ok:
                logger.warning(
                    "Skipping unreadable log partition",
                    extra={"path": self.partition_path(day), "error": result.reason},
                )
            records.extend(result.value)
            day += timedelta(days=1)

        active = {k: v for k, v in filters.items() if v is not None}
        if active:
            records = [r for r in records if all(r.get(k) == v for k, v in active.items())]
        return sorted(records, key=_sort_key, reverse=True)

    async def retention_sweep(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete this category's partitions older than retention_days."""
        return await retention_sweep(self.blob, retention_days, prefixes=(self.prefix,), now=now)


async def retention_sweep(
    blob: BlobStore,
    retention_days: int,
    prefixes: tuple[str, ...] = tuple(f"{LOG_ROOT}{c}/" for c in CATEGORIES),
    now: datetime | None = None,
) -> int:
    """Delete log files dated before now - retention_days.

    Returns:
        Number of files deleted
    """
    now = now or datetime.now(timezone.utc)
    cutoff = (now - timedelta(days=retention_days)).date()
    deleted = 0

    for prefix in prefixes:
        listing = await blob.list(prefix)
        if not listing.ok:
            continue
        for info in listing.value:
            file_date = date_from_path(info.path)
            if file_date is None or file_date >= cutoff:
                continue
            result = await blob.delete(info.path)
            if result.ok and result.value:
                deleted += 1

    logger.info(
        "Log retention sweep complete",
        extra={"retention_days": retention_days, "cutoff": cutoff.isoformat(), "deleted": deleted},
    )
    return deleted
