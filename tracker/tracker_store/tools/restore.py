"""
Restore CLI tool for the initiative collection.

This tool replaces the stored initiatives with the contents of a
snapshot. Storage is configured from the same environment variables as
the server.

Usage:
    python -m tracker.tracker_store.tools.restore --snapshot-id <id> [options]
    python -m tracker.tracker_store.tools.restore --latest [options]

Invariants:
    - The current collection is snapshotted before it is overwritten
    - --dry-run reads only; nothing is written
    - Restoring the same snapshot twice leaves the same collection

How to change safely:
    - Keep the safety snapshot ahead of any write
    - Add new restore sources additively
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass

from ..config import ServerConfig
from ..main import connect_services
from ..services import Services
from ..snapshot import new_snapshot

logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    """Result of a restore operation.

    Attributes:
        success: Whether restore succeeded
        snapshot_used: Snapshot that was restored
        entities: Number of initiatives in the snapshot
        safety_snapshot: Snapshot of the collection taken before restoring
        duration_ms: Total restore duration
        error: Error message if failed
    """

    success: bool
    snapshot_used: str | None
    entities: int
    safety_snapshot: str | None
    duration_ms: int
    error: str | None = None


class RestoreTool:
    """Restore initiatives from a snapshot.

    Example:
        >>> tool = RestoreTool(services)
        >>> result = await tool.restore("snap_20250101000000000000")
        >>> print(f"Restored {result.entities} initiatives")
    """

    def __init__(self, services: Services, dry_run: bool = False) -> None:
        self.services = services
        self.dry_run = dry_run

    async def latest_snapshot_id(self) -> str | None:
        snapshots = await self.services.snapshots.list()
        return snapshots[0].id if snapshots else None

    async def restore(self, snapshot_id: str | None = None) -> RestoreResult:
        """Replace the initiative collection with a snapshot.

        Args:
            snapshot_id: Snapshot to restore; None picks the newest
        """
        started = time.monotonic()

        def done(success: bool, **fields) -> RestoreResult:
            return RestoreResult(
                success=success,
                duration_ms=int((time.monotonic() - started) * 1000),
                **{"snapshot_used": None, "entities": 0, "safety_snapshot": None, **fields},
            )

        snapshot_id = snapshot_id or await self.latest_snapshot_id()
        if snapshot_id is None:
            return done(False, error="no snapshots found")

        snapshot = await self.services.snapshots.load(snapshot_id)
        if snapshot is None:
            return done(False, snapshot_used=snapshot_id, error=f"snapshot {snapshot_id} not found")

        data = snapshot.get("data")
        if not isinstance(data, list):
            return done(False, snapshot_used=snapshot_id, error="snapshot has no data list")

        if self.dry_run:
            logger.info(
                "Dry run, nothing written",
                extra={"snapshot_id": snapshot_id, "entities": len(data)},
            )
            return done(True, snapshot_used=snapshot_id, entities=len(data))

        current = await self.services.initiatives.read_all()
        if not current.ok and not current.corrupt:
            return done(False, snapshot_used=snapshot_id, error=f"cannot read current data: {current.reason}")

        safety = new_snapshot(current.value, name="pre_restore")
        saved = await self.services.snapshots.create(safety)
        if not saved.ok:
            return done(False, snapshot_used=snapshot_id, error=f"safety snapshot failed: {saved.reason}")

        pushed = await self.services.initiatives.push_full(data)
        if not pushed.ok:
            return done(
                False,
                snapshot_used=snapshot_id,
                safety_snapshot=safety["id"],
                error=f"write failed: {pushed.reason}",
            )

        logger.info(
            "Initiatives restored from snapshot",
            extra={"snapshot_id": snapshot_id, "entities": len(pushed.value), "safety_snapshot": safety["id"]},
        )
        return done(
            True,
            snapshot_used=snapshot_id,
            entities=len(pushed.value),
            safety_snapshot=safety["id"],
        )


async def run(snapshot_id: str | None, dry_run: bool, config: ServerConfig) -> RestoreResult:
    services = await connect_services(config)
    try:
        return await RestoreTool(services, dry_run=dry_run).restore(snapshot_id)
    finally:
        await services.blob.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for restore tool."""
    parser = argparse.ArgumentParser(description="Restore initiatives from a snapshot")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--snapshot-id", help="Snapshot to restore")
    source.add_argument("--latest", action="store_true", help="Restore the newest snapshot")
    parser.add_argument("--dry-run", action="store_true", help="Don't make changes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    result = asyncio.run(run(args.snapshot_id, args.dry_run, config))

    if result.success:
        print("Restore completed successfully" if not args.dry_run else "Dry run completed")
        print(f"  Snapshot: {result.snapshot_used}")
        print(f"  Initiatives: {result.entities}")
        print(f"  Safety snapshot: {result.safety_snapshot or 'none'}")
        print(f"  Duration: {result.duration_ms}ms")
        sys.exit(0)
    else:
        print(f"Restore failed: {result.error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
