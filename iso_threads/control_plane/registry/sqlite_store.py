"""SQLite-backed registry keyed by thread id."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path

from iso_threads.control_plane.locking import MutexGate
from iso_threads.control_plane.registry.records import ThreadRecord, detect_schema_version
from iso_threads.control_plane.registry.store import GatedMutationsMixin


class SqliteRegistryStore(GatedMutationsMixin):
    """Embedded transactional backing for the registry.

    ``replace_all`` swaps the whole table inside one transaction, which keeps the same
    all-or-nothing contract as the flat-file rename.
    """

    def __init__(
        self, db_path: Path | str, gate: MutexGate, lock_timeout_s: float = 10.0
    ) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.gate = gate
        self.lock_timeout_s = lock_timeout_s
        self._configure_connection()
        self._init_schema()

    def _configure_connection(self) -> None:
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=FULL")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS threads (
                id INTEGER PRIMARY KEY,
                position INTEGER NOT NULL,
                branch TEXT NOT NULL,
                backend_port INTEGER NOT NULL,
                frontend_port INTEGER NOT NULL,
                worktree_path TEXT NOT NULL,
                created_at TEXT NOT NULL,
                status TEXT NOT NULL,
                legacy_ports_json TEXT NOT NULL DEFAULT '[]'
            );
            """
        )
        self.conn.commit()

    def load(self) -> list[ThreadRecord]:
        rows = self.conn.execute("SELECT * FROM threads ORDER BY position ASC").fetchall()
        return [
            ThreadRecord(
                id=row["id"],
                branch=row["branch"],
                backend_port=row["backend_port"],
                frontend_port=row["frontend_port"],
                worktree_path=row["worktree_path"],
                created_at=row["created_at"],
                status=row["status"],
                legacy_ports=tuple(json.loads(row["legacy_ports_json"])),
            )
            for row in rows
        ]

    def replace_all(self, records: Iterable[ThreadRecord]) -> None:
        rows = list(records)
        detect_schema_version(rows)
        with self.locked():
            with self.conn:
                self.conn.execute("DELETE FROM threads")
                self.conn.executemany(
                    """
                    INSERT INTO threads (
                      id, position, branch, backend_port, frontend_port,
                      worktree_path, created_at, status, legacy_ports_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            record.id,
                            position,
                            record.branch,
                            record.backend_port,
                            record.frontend_port,
                            record.worktree_path,
                            record.created_at,
                            record.status,
                            json.dumps(list(record.legacy_ports)),
                        )
                        for position, record in enumerate(rows)
                    ],
                )

    def close(self) -> None:
        self.conn.close()
