from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from errors import NotFound
from models import FileRecord, WatchTarget

LOG = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def encode_files(files: list[FileRecord]) -> str:
    return json.dumps([record.to_dict() for record in files], ensure_ascii=False)


def decode_files(raw: str | None) -> list[FileRecord]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        LOG.error("Discarding unreadable persisted file list (%s bytes).", len(raw))
        return []
    if not isinstance(payload, list):
        return []
    return [FileRecord.from_dict(item) for item in payload if isinstance(item, dict) and item.get("path")]


class WatchStore:
    """sqlite persistence for watch targets; each file list is one JSON column."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS watch_targets (
                    id TEXT PRIMARY KEY,
                    root_path TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    files TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_scan TEXT NOT NULL DEFAULT ''
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def assert_writable(self) -> None:
        probe_key = "__promptner_write_probe__"
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO meta(key, value) VALUES(?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (probe_key, "ok"),
            )
            conn.execute("DELETE FROM meta WHERE key = ?", (probe_key,))

    @staticmethod
    def _row_to_target(row: sqlite3.Row) -> WatchTarget:
        return WatchTarget(
            id=str(row["id"]),
            root_path=str(row["root_path"]),
            display_name=str(row["display_name"]),
            files=decode_files(row["files"]),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
            last_scan=str(row["last_scan"] or ""),
        )

    def create(self, target_id: str, root_path: str, display_name: str, files: list[FileRecord]) -> WatchTarget:
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO watch_targets(id, root_path, display_name, files, created_at, updated_at, last_scan)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                """,
                (target_id, root_path, display_name, encode_files(files), now, now, now),
            )
        return WatchTarget(
            id=target_id,
            root_path=root_path,
            display_name=display_name,
            files=list(files),
            created_at=now,
            updated_at=now,
            last_scan=now,
        )

    def get(self, target_id: str) -> WatchTarget | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM watch_targets WHERE id = ?", (target_id,)).fetchone()
        if not row:
            return None
        return self._row_to_target(row)

    def require(self, target_id: str) -> WatchTarget:
        target = self.get(target_id)
        if target is None:
            raise NotFound(f"unknown watch: {target_id}")
        return target

    def list(self) -> list[WatchTarget]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM watch_targets ORDER BY created_at, id").fetchall()
        return [self._row_to_target(row) for row in rows]

    def replace_files(self, target_id: str, files: list[FileRecord], *, scanned: bool = False) -> WatchTarget:
        """Swap the whole file list in one statement; ``scanned`` also stamps ``last_scan``."""
        now = _now()
        with self._connect() as conn:
            if scanned:
                cursor = conn.execute(
                    "UPDATE watch_targets SET files = ?, updated_at = ?, last_scan = ? WHERE id = ?",
                    (encode_files(files), now, now, target_id),
                )
            else:
                cursor = conn.execute(
                    "UPDATE watch_targets SET files = ?, updated_at = ? WHERE id = ?",
                    (encode_files(files), now, target_id),
                )
            if cursor.rowcount == 0:
                raise NotFound(f"unknown watch: {target_id}")
        return self.require(target_id)

    def delete(self, target_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM watch_targets WHERE id = ?", (target_id,))
        return cursor.rowcount > 0
