"""SQLite persistence sink: keyed upsert plus the "already processed" check."""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
from contextlib import closing
from datetime import datetime
from typing import Any

from errors import PersistenceError
from models import PersistedEntry

SQLITE_PATH = os.getenv("SQLITE_PATH", "annotations.db")
DEFAULT_TABLE = "annotated_entries"
CONNECT_TIMEOUT_SECONDS = 30

LOGGER = logging.getLogger(__name__)

_TABLE_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


class SqliteSink:
    """Idempotent store keyed by entry id.

    Every call opens its own connection, so concurrent upserts from worker
    threads never share a cursor; SQLite serializes the writes. Errors are
    raised as ``PersistenceError`` and never retried here.
    """

    def __init__(self, db_path: str = SQLITE_PATH, table: str = DEFAULT_TABLE) -> None:
        if not _TABLE_NAME_RE.match(table):
            raise ValueError(f"Invalid table name: {table}")
        self.db_path = db_path
        self.table = table

        parent_dir = os.path.dirname(self.db_path)
        if parent_dir and not os.path.exists(parent_dir):
            os.makedirs(parent_dir, exist_ok=True)
        self._create_table()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=CONNECT_TIMEOUT_SECONDS, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _create_table(self) -> None:
        sql = f"""
        CREATE TABLE IF NOT EXISTS "{self.table}" (
            id TEXT PRIMARY KEY,
            identity_key TEXT NOT NULL,
            source_locator TEXT NOT NULL,
            status TEXT NOT NULL,
            annotation TEXT,
            metadata TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        index_sql = f'CREATE INDEX IF NOT EXISTS "{self.table}_identity_key" ON "{self.table}" (identity_key);'
        try:
            with closing(self._connect()) as conn:
                conn.execute(sql)
                conn.execute(index_sql)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not initialise table {self.table} in {self.db_path}: {exc}") from exc
        LOGGER.info("Ensured table exists: %s (%s)", self.table, self.db_path)

    def get_entry(self, key: str) -> PersistedEntry | None:
        """Look up an entry by id or identity key."""
        sql = f"""
        SELECT * FROM "{self.table}"
        WHERE id = ? OR identity_key = ?
        ORDER BY (id = ?) DESC, updated_at DESC
        LIMIT 1;
        """
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(sql, (key, key, key)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Lookup failed for key={key}: {exc}") from exc
        return _entry_from_row(row) if row is not None else None

    def already_processed(self, key: str) -> bool:
        entry = self.get_entry(key)
        return entry is not None and entry.annotation is not None

    def upsert(self, entry: PersistedEntry) -> bool:
        """Insert or overwrite ``entry``; returns False when nothing changed."""
        if not entry.entry_id:
            raise PersistenceError("Cannot persist an entry without an id")

        sql = f"""
        INSERT INTO "{self.table}"
            (id, identity_key, source_locator, status, annotation, metadata, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            identity_key = excluded.identity_key,
            source_locator = excluded.source_locator,
            status = excluded.status,
            annotation = excluded.annotation,
            metadata = excluded.metadata,
            updated_at = excluded.updated_at;
        """
        try:
            with closing(self._connect()) as conn:
                conn.execute("BEGIN IMMEDIATE;")
                try:
                    row = conn.execute(f'SELECT * FROM "{self.table}" WHERE id = ?;', (entry.entry_id,)).fetchone()
                    if row is not None and _entry_from_row(row).same_content(entry):
                        conn.execute("ROLLBACK;")
                        LOGGER.debug("Upsert no-op for id=%s (content unchanged)", entry.entry_id)
                        return False
                    conn.execute(sql, _entry_to_params(entry))
                    conn.execute("COMMIT;")
                except BaseException:
                    conn.execute("ROLLBACK;")
                    raise
        except sqlite3.Error as exc:
            raise PersistenceError(f"Upsert failed for id={entry.entry_id}: {exc}") from exc

        LOGGER.info("Persisted id=%s status=%s to %s", entry.entry_id, entry.status, self.db_path)
        return True

    def list_entries(self) -> list[PersistedEntry]:
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(f'SELECT * FROM "{self.table}" ORDER BY id;').fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Listing {self.table} failed: {exc}") from exc
        return [_entry_from_row(row) for row in rows]

    def close(self) -> None:
        """Nothing to release; connections are per call."""


def _entry_to_params(entry: PersistedEntry) -> tuple[Any, ...]:
    return (
        entry.entry_id,
        entry.identity_key,
        entry.source_locator,
        entry.status,
        json.dumps(entry.annotation, sort_keys=True) if entry.annotation is not None else None,
        json.dumps(entry.metadata, sort_keys=True),
        entry.created_at.isoformat(),
        entry.updated_at.isoformat(),
    )


def _entry_from_row(row: sqlite3.Row) -> PersistedEntry:
    annotation_raw = row["annotation"]
    return PersistedEntry(
        entry_id=row["id"],
        identity_key=row["identity_key"],
        source_locator=row["source_locator"],
        status=row["status"],
        annotation=json.loads(annotation_raw) if annotation_raw is not None else None,
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
