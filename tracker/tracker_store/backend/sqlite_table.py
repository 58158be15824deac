"""
Tabular document backend for Tracker Store.

This module stores documents the way a spreadsheet does: one sheet per
document path, a header row, and one record per row. It is realised with
SQLite, but deliberately keeps the spreadsheet's weaknesses:

- Rows have a positional row number, not a key
- Nothing stops two rows from carrying the same record id
- A full rewrite is "clear the sheet, then append every row"

A JSON array of objects is stored as rows. Any other JSON value (for
example the singleton config object) is stored as a one-cell sheet.

Invariants:
    - get() reassembles rows in row order, so a read after put() returns
      the same array
    - Cell values keep their JSON types (numbers stay numbers)
    - No unique index exists on the record id column

How to change safely:
    - The sheets registry table is the source of truth for headers
    - Never add a UNIQUE constraint on record_id: callers rely on being
      able to observe and clean up duplicates
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .base import (
    DocumentValidationError,
    ObjectInfo,
    StorageConnectionError,
    StorageError,
    TransientStorageError,
)

logger = logging.getLogger(__name__)

SHAPE_ROWS = "rows"
SHAPE_DOCUMENT = "document"
DOCUMENT_HEADER = "value"


@dataclass
class TabularRow:
    """A single sheet row.

    Attributes:
        row_number: Position-like row handle (stable until the row is deleted)
        record: Cell values keyed by header
    """

    row_number: int
    record: dict[str, Any]

    @property
    def record_id(self) -> str | None:
        value = self.record.get("id")
        return str(value) if value is not None else None


def _sheet_table(path: str) -> str:
    """Map a document path to a safe table name."""
    base = path[:-5] if path.endswith(".json") else path
    return "sheet_" + re.sub(r"[^A-Za-z0-9_]", "_", base)


class SqliteTableBackend:
    """Spreadsheet-like implementation of the DocumentBackend protocol.

    Besides the whole-document protocol it exposes row operations used by
    the collection bulk-sync path.

    Thread safety:
        Each operation opens its own connection, like the rest of the
        SQLite-backed stores. Callers serialize read-modify-write cycles.

    Example:
        >>> backend = SqliteTableBackend("/var/lib/tracker/sheets.db")
        >>> await backend.connect()
        >>> rows = await backend.read_rows("data/initiatives.json")
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        """Initialize the backend.

        Args:
            db_path: SQLite database file
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create the database file and sheets registry.

        Raises:
            StorageConnectionError: If the database cannot be opened
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS sheets (
                        path TEXT PRIMARY KEY,
                        table_name TEXT NOT NULL,
                        shape TEXT NOT NULL,
                        headers_json TEXT NOT NULL DEFAULT '[]',
                        content_type TEXT NOT NULL DEFAULT 'application/json',
                        cache_control TEXT,
                        metadata_json TEXT NOT NULL DEFAULT '{}',
                        updated_at INTEGER NOT NULL
                    );
                """)
        except (OSError, sqlite3.Error) as e:
            raise StorageConnectionError(f"Failed to open tabular store {self.db_path}: {e}") from e

        self._connected = True
        logger.info("Tabular store opened", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            yield conn
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise TransientStorageError(f"Tabular store busy: {e}") from e
            raise StorageError(f"Tabular store error: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"Tabular store error: {e}") from e
        finally:
            conn.close()

    def _require_connected(self) -> None:
        if not self._connected:
            raise StorageConnectionError("Tabular store not opened")

    def _sheet(self, conn: sqlite3.Connection, path: str) -> sqlite3.Row | None:
        return conn.execute("SELECT * FROM sheets WHERE path = ?", (path,)).fetchone()

    def _ensure_sheet(
        self,
        conn: sqlite3.Connection,
        path: str,
        shape: str,
        headers: list[str],
        content_type: str = "application/json",
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        table = _sheet_table(path)
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                row_number INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT,
                cells_json TEXT NOT NULL DEFAULT '{{}}'
            )
        """)
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_record ON {table}(record_id)")
        conn.execute(
            """
            INSERT INTO sheets
                (path, table_name, shape, headers_json, content_type,
                 cache_control, metadata_json, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                shape = excluded.shape,
                headers_json = excluded.headers_json,
                content_type = excluded.content_type,
                cache_control = excluded.cache_control,
                metadata_json = excluded.metadata_json,
                updated_at = excluded.updated_at
            """,
            (
                path,
                table,
                shape,
                json.dumps(headers),
                content_type,
                cache_control,
                json.dumps(metadata or {}),
                int(time.time() * 1000),
            ),
        )
        return table

    def _merge_headers(self, conn: sqlite3.Connection, path: str, record: dict[str, Any]) -> None:
        sheet = self._sheet(conn, path)
        headers = json.loads(sheet["headers_json"])
        missing = [k for k in record if k not in headers]
        if missing:
            conn.execute(
                "UPDATE sheets SET headers_json = ?, updated_at = ? WHERE path = ?",
                (json.dumps(headers + missing), int(time.time() * 1000), path),
            )

    # Whole-document protocol

    async def get(self, path: str) -> bytes | None:
        self._require_connected()
        with self._get_connection() as conn:
            sheet = self._sheet(conn, path)
            if sheet is None:
                return None
            rows = conn.execute(
                f"SELECT cells_json FROM {sheet['table_name']} ORDER BY row_number"
            ).fetchall()

        records = [json.loads(r["cells_json"]) for r in rows]
        if sheet["shape"] == SHAPE_DOCUMENT:
            value = records[0].get(DOCUMENT_HEADER) if records else None
            return json.dumps(value).encode("utf-8")
        return json.dumps(records).encode("utf-8")

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/json",
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        self._require_connected()
        try:
            value = json.loads(data.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DocumentValidationError(f"Tabular store only holds JSON documents: {e}") from e

        if isinstance(value, list) and all(isinstance(v, dict) for v in value):
            shape = SHAPE_ROWS
            headers: list[str] = []
            for record in value:
                headers.extend(k for k in record if k not in headers)
            records = value
        else:
            shape = SHAPE_DOCUMENT
            headers = [DOCUMENT_HEADER]
            records = [{DOCUMENT_HEADER: value}]

        with self._get_connection() as conn:
            conn.execute("BEGIN")
            try:
                table = self._ensure_sheet(
                    conn, path, shape, headers, content_type, cache_control, metadata
                )
                conn.execute(f"DELETE FROM {table}")
                conn.executemany(
                    f"INSERT INTO {table} (record_id, cells_json) VALUES (?, ?)",
                    [(_record_id(r), json.dumps(r)) for r in records],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def exists(self, path: str) -> bool:
        self._require_connected()
        with self._get_connection() as conn:
            return self._sheet(conn, path) is not None

    async def list(self, prefix: str, include_metadata: bool = False) -> list[ObjectInfo]:
        self._require_connected()
        with self._get_connection() as conn:
            sheets = conn.execute(
                "SELECT * FROM sheets WHERE substr(path, 1, ?) = ? ORDER BY path",
                (len(prefix), prefix),
            ).fetchall()
        return [
            ObjectInfo(
                path=s["path"],
                updated=datetime.fromtimestamp(s["updated_at"] / 1000, tz=timezone.utc),
                metadata=json.loads(s["metadata_json"]) if include_metadata else {},
            )
            for s in sheets
        ]

    async def delete(self, path: str) -> bool:
        self._require_connected()
        with self._get_connection() as conn:
            sheet = self._sheet(conn, path)
            if sheet is None:
                return False
            conn.execute(f"DROP TABLE IF EXISTS {sheet['table_name']}")
            conn.execute("DELETE FROM sheets WHERE path = ?", (path,))
        return True

    # Row operations

    async def read_rows(self, path: str) -> list[TabularRow]:
        """All rows of a sheet in row order. Empty if the sheet is missing."""
        self._require_connected()
        with self._get_connection() as conn:
            sheet = self._sheet(conn, path)
            if sheet is None or sheet["shape"] != SHAPE_ROWS:
                return []
            rows = conn.execute(
                f"SELECT row_number, cells_json FROM {sheet['table_name']} ORDER BY row_number"
            ).fetchall()
        return [TabularRow(r["row_number"], json.loads(r["cells_json"])) for r in rows]

    async def headers(self, path: str) -> list[str]:
        """Header row of a sheet."""
        self._require_connected()
        with self._get_connection() as conn:
            sheet = self._sheet(conn, path)
        return json.loads(sheet["headers_json"]) if sheet else []

    async def update_row(self, path: str, row_number: int, record: dict[str, Any]) -> bool:
        """Overwrite one row in place. Returns False if the row is gone."""
        self._require_connected()
        with self._get_connection() as conn:
            sheet = self._sheet(conn, path)
            if sheet is None:
                return False
            self._merge_headers(conn, path, record)
            cursor = conn.execute(
                f"UPDATE {sheet['table_name']} SET record_id = ?, cells_json = ? "
                "WHERE row_number = ?",
                (_record_id(record), json.dumps(record), row_number),
            )
            return cursor.rowcount > 0

    async def append_row(self, path: str, record: dict[str, Any]) -> int:
        """Append a row, creating the sheet with this record's header if needed."""
        self._require_connected()
        with self._get_connection() as conn:
            sheet = self._sheet(conn, path)
            if sheet is None:
                table = self._ensure_sheet(conn, path, SHAPE_ROWS, list(record))
            else:
                table = sheet["table_name"]
                self._merge_headers(conn, path, record)
            cursor = conn.execute(
                f"INSERT INTO {table} (record_id, cells_json) VALUES (?, ?)",
                (_record_id(record), json.dumps(record)),
            )
            return int(cursor.lastrowid)

    async def delete_rows(self, path: str, row_numbers: list[int]) -> int:
        """Delete rows by row number. Returns the number removed."""
        self._require_connected()
        if not row_numbers:
            return 0
        with self._get_connection() as conn:
            sheet = self._sheet(conn, path)
            if sheet is None:
                return 0
            placeholders = ",".join("?" for _ in row_numbers)
            cursor = conn.execute(
                f"DELETE FROM {sheet['table_name']} WHERE row_number IN ({placeholders})",
                row_numbers,
            )
            return cursor.rowcount

    async def clear(self, path: str) -> None:
        """Remove every row but keep the sheet and its header."""
        self._require_connected()
        with self._get_connection() as conn:
            sheet = self._sheet(conn, path)
            if sheet is not None:
                conn.execute(f"DELETE FROM {sheet['table_name']}")


def _record_id(record: Any) -> str | None:
    if isinstance(record, dict) and record.get("id") is not None:
        return str(record["id"])
    return None
